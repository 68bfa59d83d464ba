import pytest

from bioqueue.core.validation import (
    validate_generation_payload,
    validate_multimer_payload,
    validate_openfold2_payload,
    validate_protein_sequence,
    validate_single_chain_payload,
    validate_smiles,
    validate_structure_payload,
)
from bioqueue.domain.errors import ValidationError

VALID_50 = "MKTAYIAKQRQISFVKSHFSRQLEERLGLIEVQAPILSRVGDGTQDNLSG"


def test_structure_payload_is_normalised():
    payload = validate_structure_payload({"sequence": " mkta yiakq\nrqisf "})
    assert payload == {"sequence": "MKTAYIAKQRQISF"}


def test_gap_and_terminator_symbols_are_allowed():
    assert validate_protein_sequence("ACDEFGHIK-*", 10, 20) == "ACDEFGHIK-*"


@pytest.mark.parametrize("sequence, message", [
    ("MKTAY", "between 10 and 2000"),
    ("MKTAYIAKQRQISFXB1", "invalid characters"),
    ("", "empty"),
])
def test_bad_sequences_are_rejected(sequence, message):
    with pytest.raises(ValidationError, match=message):
        validate_structure_payload({"sequence": sequence})


def test_sequence_too_long_is_rejected():
    with pytest.raises(ValidationError):
        validate_structure_payload({"sequence": "A" * 2001})


def test_missing_sequence_is_rejected():
    with pytest.raises(ValidationError):
        validate_structure_payload({})


def test_multimer_accepts_one_to_five_sequences():
    result = validate_multimer_payload({"sequences": [VALID_50] * 5})
    assert len(result["sequences"]) == 5


@pytest.mark.parametrize("count", [0, 6])
def test_multimer_rejects_wrong_sequence_count(count):
    with pytest.raises(ValidationError):
        validate_multimer_payload({"sequences": [VALID_50] * count})


def test_multimer_reports_which_sequence_is_invalid():
    with pytest.raises(ValidationError, match="Sequence 2"):
        validate_multimer_payload({"sequences": [VALID_50, "SHORT"]})


def test_multimer_length_limit_is_1500():
    with pytest.raises(ValidationError):
        validate_multimer_payload({"sequences": ["A" * 1501]})


def test_multimer_rejects_a_bare_string():
    with pytest.raises(ValidationError, match="list"):
        validate_multimer_payload({"sequences": VALID_50})


def test_multimer_options_are_checked():
    result = validate_multimer_payload({
        "sequences": [VALID_50], "algorithm": "mmseqs2", "e_value": 0.001, "iterations": 2,
        "databases": ["uniref90"], "relax_prediction": False,
    })
    assert result["algorithm"] == "mmseqs2"
    assert result["relax_prediction"] is False
    with pytest.raises(ValidationError):
        validate_multimer_payload({"sequences": [VALID_50], "algorithm": "blast"})
    with pytest.raises(ValidationError):
        validate_multimer_payload({"sequences": [VALID_50], "relax_prediction": "yes"})


def test_generation_payload_accepts_aliases():
    result = validate_generation_payload({
        "smiles": "CC(=O)Oc1ccccc1C(=O)O", "numMolecules": 10, "num_particles": 20,
        "minSimilarity": 0.5, "minimize": True,
    })
    assert result == {
        "smi": "CC(=O)Oc1ccccc1C(=O)O", "num_molecules": 10, "particles": 20,
        "min_similarity": 0.5, "minimize": True,
    }


@pytest.mark.parametrize("overrides", [
    {"num_molecules": 0},
    {"num_molecules": -3},
    {"num_molecules": True},
    {"iterations": 2.5},
    {"particles": "30"},
    {"min_similarity": 1.5},
    {"min_similarity": -0.1},
])
def test_generation_numeric_rules(overrides):
    with pytest.raises(ValidationError):
        validate_generation_payload({"smiles": "CCO", **overrides})


def test_similarity_bounds_are_inclusive():
    assert validate_generation_payload({"smiles": "CCO", "min_similarity": 0})["min_similarity"] == 0.0
    assert validate_generation_payload({"smiles": "CCO", "min_similarity": 1})["min_similarity"] == 1.0


@pytest.mark.parametrize("smiles", ["", "   ", None, "CC O", "C<C"])
def test_invalid_smiles(smiles):
    with pytest.raises(ValidationError):
        validate_smiles(smiles)


def test_openfold2_rejects_gap_and_terminator_symbols():
    with pytest.raises(ValidationError, match="Only standard amino acid letters are allowed"):
        validate_openfold2_payload({"sequence": VALID_50 + "-*"})


def test_openfold2_length_limit_is_1500():
    assert validate_openfold2_payload({"sequence": "A" * 1500})["sequence"] == "A" * 1500
    with pytest.raises(ValidationError, match="between 10 and 1500"):
        validate_openfold2_payload({"sequence": "A" * 1501})


@pytest.mark.parametrize("models", [[], [0], [6], "1", [True]])
def test_openfold2_selected_models_are_checked(models):
    with pytest.raises(ValidationError, match="selected_models"):
        validate_openfold2_payload({"sequence": VALID_50, "selected_models": models})


def test_single_chain_alphafold_allows_2000_residues_and_msa_options():
    payload = validate_single_chain_payload({"sequence": "a" * 2000, "algorithm": "mmseqs2"})
    assert payload == {"sequence": "A" * 2000, "algorithm": "mmseqs2"}
    with pytest.raises(ValidationError):
        validate_single_chain_payload({"sequence": "A" * 2001})
    with pytest.raises(ValidationError):
        validate_single_chain_payload({"sequences": [VALID_50]})
