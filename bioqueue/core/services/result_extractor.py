"""Result Extractor: finds and validates the artifact in an untrusted payload.

Upstream responses have no fixed shape, so the artifact is located in strict
priority order:

1. the whole payload, if it is a string containing a document marker;
2. a fixed, ordered list of candidate key paths from the job kind descriptor;
3. a bounded pre-order walk of the JSON tree for a long enough string that
   contains a marker.

If all three fail an ExtractionError is raised. A placeholder artifact is
never produced.

Generated-item payloads (molecule generation) are handled separately: the
items array is located (decoding it if it arrived as a JSON string), each
entry is mapped through alias chains and empty entries are dropped.
"""

import json
import logging
import re
from enum import Enum
from functools import lru_cache
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from bioqueue.core.job_kinds import (
    MOLECULE_REPRESENTATION_ALIASES,
    MOLECULE_SCORE_ALIASES,
    SHAPE_ITEMS,
    STRUCTURE_RECORD_PREFIXES,
    JobKindDescriptor,
)
from bioqueue.domain.errors import ExtractionError
from bioqueue.domain.models.common import JsonValue, ScoreMap
from bioqueue.domain.models.job import GeneratedItem, JobResult, JobResultDraft, JobStatus

logger = logging.getLogger(__name__)

MAX_SCAN_DEPTH = 8
MAX_SCAN_NODES = 5000
MIN_DOCUMENT_LENGTH = 20
MAX_KEYS_REPORTED = 20
SPARSE_STRUCTURE_WARNING = "sparse_structure"

PathToken = Union[str, int]
_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


class NodeKind(Enum):
    """Tag for a JSON value."""
    OBJECT = "object"
    ARRAY = "array"
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"


def node_kind(value: Any) -> NodeKind:
    if value is None:
        return NodeKind.NULL
    if isinstance(value, bool):
        return NodeKind.BOOL
    if isinstance(value, (int, float)):
        return NodeKind.NUMBER
    if isinstance(value, str):
        return NodeKind.STRING
    if isinstance(value, Mapping):
        return NodeKind.OBJECT
    if isinstance(value, (list, tuple)):
        return NodeKind.ARRAY
    raise TypeError(f"Not a JSON value: {type(value).__name__}")


@lru_cache(maxsize=256)
def parse_path(path: str) -> Tuple[PathToken, ...]:
    """'results[0].structure' -> ('results', 0, 'structure')."""
    tokens: List[PathToken] = []
    for match in _PATH_TOKEN.finditer(path):
        key, index = match.groups()
        tokens.append(int(index) if index is not None else key)
    return tuple(tokens)


def resolve_path(value: JsonValue, path: str) -> Optional[JsonValue]:
    """Follows ``path`` through objects and arrays; None when any step is missing."""
    current: Any = value
    for token in parse_path(path):
        kind = node_kind(current)
        if isinstance(token, int):
            if kind is not NodeKind.ARRAY or token >= len(current):
                return None
            current = current[token]
        else:
            if kind is not NodeKind.OBJECT or token not in current:
                return None
            current = current[token]
    return current


def walk(value: JsonValue, max_depth: int = MAX_SCAN_DEPTH, max_nodes: int = MAX_SCAN_NODES) -> Iterator[Tuple[str, Any]]:
    """Pre-order traversal yielding ``(path, node)`` pairs.

    Stops descending below ``max_depth`` and stops entirely after visiting
    ``max_nodes`` nodes. Object keys are visited in insertion order, so the
    traversal order is stable for a given payload.
    """
    budget = max_nodes
    stack: List[Tuple[str, Any, int]] = [("", value, 0)]
    while stack and budget > 0:
        path, node, depth = stack.pop()
        budget -= 1
        yield path, node
        if depth >= max_depth:
            continue
        kind = node_kind(node)
        if kind is NodeKind.OBJECT:
            children = [(f"{path}.{key}" if path else str(key), child) for key, child in node.items()]
        elif kind is NodeKind.ARRAY:
            children = [(f"{path}[{index}]", child) for index, child in enumerate(node)]
        else:
            continue
        # Reverse so the first child is popped first
        for child_path, child in reversed(children):
            stack.append((child_path, child, depth + 1))


def observed_keys(value: JsonValue, limit: int = MAX_KEYS_REPORTED) -> List[str]:
    """Object key paths seen in ``value`` (array elements skipped), for error reports."""
    keys: List[str] = []
    for path, _ in walk(value, max_depth=3, max_nodes=500):
        if path and "[" not in path:
            keys.append(path)
        if len(keys) >= limit:
            break
    return keys


def count_structure_records(document: str) -> int:
    return sum(1 for line in document.splitlines() if line.startswith(STRUCTURE_RECORD_PREFIXES))


def _as_float(value: Any) -> Optional[float]:
    if node_kind(value) is NodeKind.NUMBER:
        return float(value)
    return None


class ResultExtractor:
    """Builds a JobResult from a successful payload."""

    def __init__(
        self,
        max_depth: int = MAX_SCAN_DEPTH,
        max_nodes: int = MAX_SCAN_NODES,
        min_document_length: int = MIN_DOCUMENT_LENGTH,
    ):
        self.max_depth = max_depth
        self.max_nodes = max_nodes
        self.min_document_length = min_document_length

    def extract(self, draft: JobResultDraft, descriptor: JobKindDescriptor) -> JobResult:
        """Locates the artifact and scores in ``draft.payload``.

        Raises:
            ExtractionError: If no artifact can be located.
        """
        if descriptor.result_shape == SHAPE_ITEMS:
            items = self.extract_items(draft.payload, descriptor)
            logger.info(f"Extracted {len(items)} generated item(s) for {descriptor.kind.value}")
            return JobResult(
                status=JobStatus.COMPLETED,
                kind=descriptor.kind,
                artifact=items,
                scores=self.extract_scores(draft.payload, descriptor),
                request_id=draft.request_id,
            )

        document, source = self.extract_document(draft.payload, descriptor)
        warnings: Tuple[str, ...] = ()
        records = count_structure_records(document)
        if records < descriptor.min_records:
            logger.warning(
                f"Structure for {descriptor.kind.value} has only {records} atom record(s) "
                f"(expected at least {descriptor.min_records}); returning it anyway."
            )
            warnings = (SPARSE_STRUCTURE_WARNING,)
        logger.info(f"Extracted {descriptor.kind.value} document from '{source}' ({records} atom records)")
        return JobResult(
            status=JobStatus.COMPLETED,
            kind=descriptor.kind,
            artifact=document,
            scores=self.extract_scores(draft.payload, descriptor),
            request_id=draft.request_id,
            warnings=warnings,
        )

    # --- documents ---

    def extract_document(self, payload: JsonValue, descriptor: JobKindDescriptor) -> Tuple[str, str]:
        """Returns ``(document, where_it_was_found)``."""
        if isinstance(payload, str):
            # JSON that arrived as text is searched like any other payload
            decoded = self._decode_embedded_json(payload)
            if decoded is None:
                if payload.strip() and descriptor.looks_like_document(payload):
                    return payload, "<body>"
                raise ExtractionError("Response text is not a structure document")
            payload = decoded

        for path in descriptor.artifact_paths:
            candidate = resolve_path(payload, path)
            if isinstance(candidate, str) and candidate.strip() and descriptor.looks_like_document(candidate):
                return candidate, path

        for path, node in walk(payload, self.max_depth, self.max_nodes):
            if isinstance(node, str) and len(node) >= self.min_document_length and descriptor.looks_like_document(node):
                logger.debug(f"Structure document found by scan at '{path or '<root>'}'")
                return node, path or "<root>"

        keys = observed_keys(payload)
        logger.error(f"No structure document in {descriptor.kind.value} response; keys: {keys}")
        raise ExtractionError("No structure document found in the response", keys_observed=keys)

    @staticmethod
    def _decode_embedded_json(text: str) -> Optional[JsonValue]:
        try:
            decoded = json.loads(text)
        except ValueError:
            return None
        if node_kind(decoded) in (NodeKind.OBJECT, NodeKind.ARRAY):
            return decoded
        return None

    # --- generated items ---

    def extract_items(self, payload: JsonValue, descriptor: JobKindDescriptor) -> List[GeneratedItem]:
        raw_items = self._locate_items(payload, descriptor)
        items: List[GeneratedItem] = []
        for entry in raw_items:
            item = self._to_item(entry)
            if item is not None:
                items.append(item)
        if not items:
            raise ExtractionError(
                "Response contained no generated items with a representation",
                keys_observed=observed_keys(payload) if not isinstance(payload, str) else (),
            )
        dropped = len(raw_items) - len(items)
        if dropped:
            logger.warning(f"Dropped {dropped} generated item(s) without a representation")
        return items

    def _locate_items(self, payload: JsonValue, descriptor: JobKindDescriptor) -> Sequence[Any]:
        if isinstance(payload, str):
            decoded = self._decode_embedded_json(payload)
            if decoded is None:
                raise ExtractionError("Response text is not a JSON document")
            payload = decoded
        if node_kind(payload) is NodeKind.ARRAY:
            return payload

        for path in descriptor.item_paths:
            candidate = resolve_path(payload, path)
            if isinstance(candidate, str):
                # Some responses double-encode the array
                candidate = self._decode_embedded_json(candidate)
                if candidate is None:
                    raise ExtractionError(f"Items under '{path}' are a string that is not a JSON array")
            if node_kind(candidate) is NodeKind.ARRAY:
                return candidate

        raise ExtractionError("Response is missing the generated items array", keys_observed=observed_keys(payload))

    @staticmethod
    def _to_item(entry: Any) -> Optional[GeneratedItem]:
        kind = node_kind(entry)
        if kind is NodeKind.STRING:
            return GeneratedItem(representation=entry.strip()) if entry.strip() else None
        if kind is not NodeKind.OBJECT:
            return None
        representation = ""
        for alias in MOLECULE_REPRESENTATION_ALIASES:
            value = entry.get(alias)
            if isinstance(value, str) and value.strip():
                representation = value.strip()
                break
        if not representation:
            return None
        score = None
        for alias in MOLECULE_SCORE_ALIASES:
            score = _as_float(entry.get(alias))
            if score is not None:
                break
        return GeneratedItem(representation=representation, score=score)

    # --- scores ---

    def extract_scores(self, payload: JsonValue, descriptor: JobKindDescriptor) -> ScoreMap:
        """Named scores via alias chains; missing scores are simply absent."""
        if isinstance(payload, str):
            payload = self._decode_embedded_json(payload)
            if payload is None:
                return {}
        scores: ScoreMap = {}
        for name, aliases in descriptor.score_aliases.items():
            for alias in aliases:
                value = _as_float(resolve_path(payload, alias))
                if value is not None:
                    scores[name] = value
                    break
        return scores
