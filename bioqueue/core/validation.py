"""Pre-dispatch payload validation.

Every check here runs before a request is built, so invalid input never
reaches the dispatch queue. Validators return a normalised copy of the
payload; that copy is what gets sent upstream.
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from bioqueue.domain.errors import ValidationError

STANDARD_AMINO_ACIDS = frozenset("ACDEFGHIKLMNPQRSTVWY")
# Standard residues plus gap (-) and terminator (*)
AMINO_ACID_ALPHABET = STANDARD_AMINO_ACIDS | frozenset("-*")
_WHITESPACE = re.compile(r"\s+")
# Atoms, bonds, branches, ring closures, charges and stereo marks
_SMILES_PATTERN = re.compile(r"^[A-Za-z0-9@+\-\[\]\(\)=#$%/\\.:*~]+$")


def normalize_sequence(sequence: Any) -> str:
    if not isinstance(sequence, str):
        raise ValidationError("Protein sequence must be a string", diagnostic=type(sequence).__name__)
    return _WHITESPACE.sub("", sequence).upper()


def validate_protein_sequence(
    sequence: Any,
    min_length: int,
    max_length: int,
    label: str = "Sequence",
    alphabet: frozenset = AMINO_ACID_ALPHABET,
) -> str:
    """Checks alphabet and length of one protein sequence.

    Returns:
        The sequence with whitespace removed and upper-cased.
    """
    normalized = normalize_sequence(sequence)
    if not normalized:
        raise ValidationError(f"{label} is empty")
    invalid = sorted(set(normalized) - alphabet)
    if invalid:
        allowed = "Only standard amino acid letters are allowed."
        if alphabet != STANDARD_AMINO_ACIDS:
            allowed = "Only standard amino acid letters, gaps (-) or terminations (*) are allowed."
        raise ValidationError(f"{label} contains invalid characters: {''.join(invalid)}. {allowed}")
    if not min_length <= len(normalized) <= max_length:
        raise ValidationError(
            f"{label} length must be between {min_length} and {max_length} amino acids (got {len(normalized)})"
        )
    return normalized


def validate_sequences(
    sequences: Any, min_count: int, max_count: int, min_length: int, max_length: int
) -> List[str]:
    if isinstance(sequences, str) or not isinstance(sequences, Sequence):
        raise ValidationError("Sequences must be provided as a list")
    if not min_count <= len(sequences) <= max_count:
        raise ValidationError(f"Between {min_count} and {max_count} sequences are required (got {len(sequences)})")
    return [
        validate_protein_sequence(seq, min_length, max_length, label=f"Sequence {index + 1}")
        for index, seq in enumerate(sequences)
    ]


def validate_positive_int(payload: Mapping[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    value = payload.get(key, default)
    if value is None:
        return None
    # bool is an int subclass; True is not a count
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"'{key}' must be a positive integer (got {value!r})")
    return value


def validate_fraction(payload: Mapping[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
    value = payload.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= float(value) <= 1.0:
        raise ValidationError(f"'{key}' must be a number between 0 and 1 (got {value!r})")
    return float(value)


def validate_smiles(smiles: Any) -> str:
    """Syntactic screening only; chemical validity is not checked."""
    if not isinstance(smiles, str) or not smiles.strip():
        raise ValidationError("A non-empty SMILES string is required")
    smiles = smiles.strip()
    if not _SMILES_PATTERN.match(smiles):
        raise ValidationError("SMILES string contains characters outside the SMILES alphabet", diagnostic=smiles)
    return smiles


# --- Kind-specific validators ---

def validate_structure_payload(payload: Mapping[str, Any], min_length: int = 10, max_length: int = 2000) -> Dict[str, Any]:
    if "sequence" not in payload:
        raise ValidationError("A protein sequence is required")
    return {"sequence": validate_protein_sequence(payload["sequence"], min_length, max_length)}


def validate_openfold2_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """OpenFold2 takes 10-1500 residues and no gap or terminator symbols."""
    if "sequence" not in payload:
        raise ValidationError("A protein sequence is required")
    normalized: Dict[str, Any] = {
        "sequence": validate_protein_sequence(payload["sequence"], 10, 1500, alphabet=STANDARD_AMINO_ACIDS)
    }
    if "selected_models" in payload:
        models = payload["selected_models"]
        if isinstance(models, str) or not isinstance(models, Sequence) or not models \
                or not all(isinstance(m, int) and not isinstance(m, bool) and 1 <= m <= 5 for m in models):
            raise ValidationError("'selected_models' must be a non-empty list of model numbers between 1 and 5")
        normalized["selected_models"] = list(models)
    if "relax_prediction" in payload:
        if not isinstance(payload["relax_prediction"], bool):
            raise ValidationError("'relax_prediction' must be true or false")
        normalized["relax_prediction"] = payload["relax_prediction"]
    return normalized


def validate_single_chain_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """One chain run through AlphaFold2 with the multimer MSA options (10-2000 residues)."""
    if "sequence" not in payload:
        raise ValidationError("A protein sequence is required")
    options = {key: value for key, value in payload.items() if key != "sequence"}
    normalized = validate_multimer_payload({**options, "sequences": [payload["sequence"]]}, max_length=2000,
                                           max_sequences=1)
    normalized["sequence"] = normalized.pop("sequences")[0]
    return normalized


def validate_multimer_payload(
    payload: Mapping[str, Any],
    min_length: int = 10,
    max_length: int = 1500,
    max_sequences: int = 5,
) -> Dict[str, Any]:
    if "sequences" not in payload:
        raise ValidationError("At least one protein sequence is required")
    normalized: Dict[str, Any] = {
        "sequences": validate_sequences(payload["sequences"], 1, max_sequences, min_length, max_length)
    }
    if "algorithm" in payload:
        algorithm = payload["algorithm"]
        if algorithm not in ("jackhmmer", "mmseqs2"):
            raise ValidationError(f"Unsupported MSA algorithm: {algorithm!r}")
        normalized["algorithm"] = algorithm
    if "e_value" in payload:
        e_value = payload["e_value"]
        if isinstance(e_value, bool) or not isinstance(e_value, (int, float)) or e_value <= 0:
            raise ValidationError(f"'e_value' must be a positive number (got {e_value!r})")
        normalized["e_value"] = float(e_value)
    if "iterations" in payload:
        normalized["iterations"] = validate_positive_int(payload, "iterations")
    if "databases" in payload:
        databases = payload["databases"]
        if isinstance(databases, str) or not isinstance(databases, Sequence) or not databases \
                or not all(isinstance(db, str) and db for db in databases):
            raise ValidationError("'databases' must be a non-empty list of database names")
        normalized["databases"] = list(databases)
    if "relax_prediction" in payload:
        if not isinstance(payload["relax_prediction"], bool):
            raise ValidationError("'relax_prediction' must be true or false")
        normalized["relax_prediction"] = payload["relax_prediction"]
    return normalized


def validate_generation_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    smiles = payload.get("smiles", payload.get("smi"))
    normalized: Dict[str, Any] = {"smi": validate_smiles(smiles)}
    # Accept both the upstream names and the camelCase names used by web clients
    aliases = {
        "num_molecules": ("num_molecules", "numMolecules"),
        "particles": ("particles", "num_particles"),
        "iterations": ("iterations", "num_iterations"),
        "min_similarity": ("min_similarity", "minSimilarity"),
    }
    resolved = {}
    for canonical, names in aliases.items():
        for name in names:
            if name in payload:
                resolved[canonical] = payload[name]
                break
    for key in ("num_molecules", "particles", "iterations"):
        value = validate_positive_int(resolved, key)
        if value is not None:
            normalized[key] = value
    similarity = validate_fraction(resolved, "min_similarity")
    if similarity is not None:
        normalized["min_similarity"] = similarity
    if "minimize" in payload:
        if not isinstance(payload["minimize"], bool):
            raise ValidationError("'minimize' must be true or false")
        normalized["minimize"] = payload["minimize"]
    return normalized
