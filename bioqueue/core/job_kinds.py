"""Job Kind descriptors.

Each upstream job kind is described by data: where to submit, how to
validate and shape the payload, how long to wait for it, and where in a
response its artifact and scores usually live. The submitter, poller and
extractor are written once against this descriptor.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Tuple, Union

from bioqueue.core import validation
from bioqueue.domain.errors import ValidationError
from bioqueue.domain.models.common import RequestBody
from bioqueue.domain.models.job import JobKind
from bioqueue.infrastructure.config.settings import get_config

logger = logging.getLogger(__name__)

NVIDIA_HEALTH_API = "https://health.api.nvidia.com/v1"
STATUS_URL = f"{NVIDIA_HEALTH_API}/status"
REQUEST_ID_HEADER = "nvcf-reqid"
REQUEST_ID_FALLBACK_HEADERS = ("reqid", "x-request-id")
POLL_HINT_HEADER = "NVCF-POLL-SECONDS"

SHAPE_DOCUMENT = "document"
SHAPE_ITEMS = "items"

# Record prefixes that identify a PDB document
STRUCTURE_MARKERS = ("ATOM", "HEADER")
STRUCTURE_RECORD_PREFIXES = ("ATOM", "HETATM")

STRUCTURE_ARTIFACT_PATHS = (
    "structure",
    "pdb",
    "pdb_string",
    "pdb_file",
    "pdbs[0]",
    "prediction.structure",
    "prediction.pdb_string",
    "output.structure",
    "output.pdb",
    "output.pdb_string",
    "output.prediction.pdb_string",
    "output.pdbs[0]",
    "results[0].structure",
    "results[0].pdb",
    "results.structure",
    "results.pdb_file",
    "structures[0]",
    "data.structure",
)

STRUCTURE_SCORE_ALIASES: Mapping[str, Tuple[str, ...]] = {
    "plddt": ("plddt", "mean_plddt", "plddts[0]", "output.plddt", "scores.plddt", "results.scores.plddt",
              "confidence"),
    "ptm": ("ptm", "ptm_score", "output.ptm", "scores.ptm", "results.scores.ptm"),
    "iptm": ("iptm", "iptm_score", "output.iptm", "scores.iptm", "results.scores.iptm"),
}

MOLECULE_ITEM_PATHS = (
    "molecules",
    "output.molecules",
    "generated",
    "results.molecules",
    "samples",
    "results",
)
MOLECULE_REPRESENTATION_ALIASES = ("sample", "smiles", "smi", "structure")
MOLECULE_SCORE_ALIASES = ("score", "qed", "property")


def _structure_body(payload: Mapping[str, Any]) -> RequestBody:
    return {"sequence": payload["sequence"]}


def _openfold2_body(payload: Mapping[str, Any]) -> RequestBody:
    body: RequestBody = {"sequence": payload["sequence"]}
    for key in ("selected_models", "relax_prediction"):
        if key in payload:
            body[key] = payload[key]
    return body


def _multimer_body(payload: Mapping[str, Any]) -> RequestBody:
    return {
        "sequences": payload["sequences"],
        "algorithm": payload.get("algorithm", "jackhmmer"),
        "e_value": payload.get("e_value", 0.0001),
        "iterations": payload.get("iterations", 1),
        "databases": payload.get("databases", ["uniref90", "small_bfd", "mgnify"]),
        "relax_prediction": payload.get("relax_prediction", True),
    }


def _single_chain_alphafold_body(payload: Mapping[str, Any]) -> RequestBody:
    options = {key: value for key, value in payload.items() if key != "sequence"}
    return _multimer_body({**options, "sequences": [payload["sequence"]]})


def _generation_body(payload: Mapping[str, Any]) -> RequestBody:
    return {
        "smi": payload["smi"],
        "algorithm": "CMA-ES",
        "num_molecules": payload.get("num_molecules", 30),
        "property_name": "QED",
        "minimize": payload.get("minimize", False),
        "min_similarity": payload.get("min_similarity", 0.3),
        "particles": payload.get("particles", 30),
        "iterations": payload.get("iterations", 10),
    }


@dataclass(frozen=True)
class JobKindDescriptor:
    """Everything the pipeline needs to know about one model serving a kind of job."""
    kind: JobKind
    model: str
    submit_url: str
    validate: Callable[[Mapping[str, Any]], Dict[str, Any]]
    build_body: Callable[[Mapping[str, Any]], RequestBody]
    credential_keys: Tuple[str, ...] = ("NVCF_RUN_KEY", "NVIDIA_API_KEY")
    status_url: str = STATUS_URL
    poll_hint_s: int = 5
    deadline_s: float = 300.0
    result_shape: str = SHAPE_DOCUMENT
    artifact_paths: Tuple[str, ...] = ()
    item_paths: Tuple[str, ...] = ()
    score_aliases: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    markers: Tuple[str, ...] = STRUCTURE_MARKERS
    min_records: int = 10

    def prepare(self, payload: Mapping[str, Any]) -> RequestBody:
        """Validates ``payload`` and returns the upstream request body."""
        return self.build_body(self.validate(payload))

    def status_endpoint(self, request_id: str) -> str:
        return f"{self.status_url.rstrip('/')}/{request_id}"

    def looks_like_document(self, text: str) -> bool:
        return any(marker in text for marker in self.markers)


# The first descriptor listed for a kind is its default model
DEFAULT_DESCRIPTORS: Tuple[JobKindDescriptor, ...] = (
    JobKindDescriptor(
        kind=JobKind.STRUCTURE_PREDICTION,
        model="esmfold",
        submit_url=f"{NVIDIA_HEALTH_API}/biology/nvidia/esmfold",
        validate=validation.validate_structure_payload,
        build_body=_structure_body,
        deadline_s=300.0,
        artifact_paths=STRUCTURE_ARTIFACT_PATHS,
        score_aliases=STRUCTURE_SCORE_ALIASES,
    ),
    JobKindDescriptor(
        kind=JobKind.STRUCTURE_PREDICTION,
        model="openfold2",
        submit_url=f"{NVIDIA_HEALTH_API}/biology/openfold/openfold2/predict-structure-from-msa-and-template",
        validate=validation.validate_openfold2_payload,
        build_body=_openfold2_body,
        credential_keys=("NVIDIA_API_KEY", "NVCF_RUN_KEY"),
        poll_hint_s=300,
        deadline_s=900.0,
        artifact_paths=STRUCTURE_ARTIFACT_PATHS,
        score_aliases=STRUCTURE_SCORE_ALIASES,
    ),
    JobKindDescriptor(
        kind=JobKind.STRUCTURE_PREDICTION,
        model="alphafold2",
        submit_url=f"{NVIDIA_HEALTH_API}/biology/deepmind/alphafold2-multimer",
        validate=validation.validate_single_chain_payload,
        build_body=_single_chain_alphafold_body,
        credential_keys=("NVCF_RUN_KEY", "NVIDIA_API_KEY"),
        poll_hint_s=1,
        deadline_s=1800.0,
        artifact_paths=STRUCTURE_ARTIFACT_PATHS,
        score_aliases=STRUCTURE_SCORE_ALIASES,
    ),
    JobKindDescriptor(
        kind=JobKind.MULTIMER_PREDICTION,
        model="alphafold2-multimer",
        submit_url=f"{NVIDIA_HEALTH_API}/biology/deepmind/alphafold2-multimer",
        validate=validation.validate_multimer_payload,
        build_body=_multimer_body,
        credential_keys=("NVIDIA_MULTIMER_API_KEY", "NVCF_RUN_KEY", "NVIDIA_API_KEY"),
        deadline_s=1800.0,
        artifact_paths=STRUCTURE_ARTIFACT_PATHS,
        score_aliases=STRUCTURE_SCORE_ALIASES,
    ),
    JobKindDescriptor(
        kind=JobKind.MOLECULE_GENERATION,
        model="molmim",
        submit_url=f"{NVIDIA_HEALTH_API}/biology/nvidia/molmim/generate",
        validate=validation.validate_generation_payload,
        build_body=_generation_body,
        credential_keys=("NVIDIA_API_KEY", "NVCF_RUN_KEY"),
        deadline_s=300.0,
        result_shape=SHAPE_ITEMS,
        item_paths=MOLECULE_ITEM_PATHS,
        markers=(),
        min_records=0,
    ),
)


class JobKindRegistry:
    """Lookup of descriptors by kind and model.

    ``registry[kind]`` is the kind's default model; ``registry.get(kind, model)``
    selects a specific one.
    """

    def __init__(self, descriptors: Optional[Iterable[JobKindDescriptor]] = None):
        self._descriptors: Dict[JobKind, Dict[str, JobKindDescriptor]] = {}
        self._defaults: Dict[JobKind, str] = {}
        for descriptor in (DEFAULT_DESCRIPTORS if descriptors is None else descriptors):
            self.register(descriptor)

    def __getitem__(self, kind: Union[JobKind, str]) -> JobKindDescriptor:
        return self.get(kind)

    def __iter__(self) -> Iterator[JobKindDescriptor]:
        for variants in self._descriptors.values():
            yield from variants.values()

    def get(self, kind: Union[JobKind, str], model: Optional[str] = None) -> JobKindDescriptor:
        """Returns the descriptor for ``model`` (or the default model) of ``kind``.

        Raises:
            KeyError: If nothing is registered for the kind.
            ValidationError: If the kind has no such model.
        """
        job_kind = JobKind.parse(kind)
        variants = self._descriptors.get(job_kind)
        if not variants:
            raise KeyError(f"No descriptor registered for job kind {kind!r}")
        name = (model or self._defaults[job_kind]).strip().lower()
        if name not in variants:
            raise ValidationError(
                f"Unknown model '{model}' for {job_kind.value}. Available: {', '.join(variants)}"
            )
        return variants[name]

    def models(self, kind: Union[JobKind, str]) -> Tuple[str, ...]:
        return tuple(self._descriptors.get(JobKind.parse(kind), {}))

    def register(self, descriptor: JobKindDescriptor, default: bool = False) -> None:
        """Adds or replaces the descriptor for its (kind, model) pair."""
        self._descriptors.setdefault(descriptor.kind, {})[descriptor.model] = descriptor
        if default or descriptor.kind not in self._defaults:
            self._defaults[descriptor.kind] = descriptor.model

    @classmethod
    def from_config(cls) -> "JobKindRegistry":
        """Default descriptors with URL/deadline/poll-hint overrides from configuration.

        Keys: ``<kind>.<model>.url`` (or ``<kind>.url`` for the kind's default
        model), likewise ``deadline_s`` and ``poll_hint_s``, plus ``status.url``.
        """
        registry = cls(())
        status_url = str(get_config("status.url", STATUS_URL))
        defaults: Dict[JobKind, str] = {}
        for descriptor in DEFAULT_DESCRIPTORS:
            defaults.setdefault(descriptor.kind, descriptor.model)
            prefixes = [f"{descriptor.kind.value}.{descriptor.model}"]
            if defaults[descriptor.kind] == descriptor.model:
                prefixes.append(descriptor.kind.value)

            def lookup(name: str) -> Any:
                for prefix in prefixes:
                    value = get_config(f"{prefix}.{name}")
                    if value is not None and value != "":
                        return value
                return None

            overrides: Dict[str, Any] = {"status_url": status_url}
            url = lookup("url")
            if url:
                overrides["submit_url"] = str(url)
            deadline = lookup("deadline_s")
            if deadline is not None:
                overrides["deadline_s"] = float(deadline)
            poll_hint = lookup("poll_hint_s")
            if poll_hint is not None:
                overrides["poll_hint_s"] = int(poll_hint)
            configured = replace(descriptor, **overrides)
            registry.register(configured)
            logger.debug(f"Descriptor for {descriptor.kind.value}/{descriptor.model}: "
                         f"url={configured.submit_url}, deadline={configured.deadline_s}s")
        return registry
