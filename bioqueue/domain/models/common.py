"""Defines common Value Objects used across different domain contexts.

These objects represent simple values like upstream job ids, API keys and
result artifacts, ensuring consistency and type safety.
"""

from typing import Any, Dict, List, NewType, Union

# === Core Value Objects ===

# Using NewType for semantic clarity, although they are plain values at runtime.
RequestId = NewType("RequestId", str)          # Opaque upstream job token (nvcf-reqid)
ApiKey = NewType("ApiKey", str)                # Bearer credential, never logged
Url = NewType("Url", str)
StructureDocument = NewType("StructureDocument", str)  # PDB text
Smiles = NewType("Smiles", str)                # Molecule line notation

# === Payload Context ===
JsonValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]
JobPayload = Dict[str, Any]                    # Caller-supplied request fields
RequestBody = Dict[str, Any]                   # Upstream JSON body
ScoreMap = Dict[str, float]                    # Named numeric scores (plddt, ptm...)
