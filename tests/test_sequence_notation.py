import pytest

from lfq_pipeline.errors import InputContractViolation
from lfq_pipeline.sequence_notation import decode, split_modifications, translate


def test_no_modifications_returns_sequence():
    assert translate("PEPTIDE", "") == "PEPTIDE"
    assert translate("PEPTIDE", None) == "PEPTIDE"
    assert translate("PEPTIDE", []) == "PEPTIDE"


def test_residue_and_terminal_modifications():
    assert translate("PEPTIDE", "N-Term(Acetyl); T4(Phospho)") == "(Acetyl)PEPT(Phospho)IDE"
    assert translate("PEPTIDEK", ["K8(Label:13C(6)15N(2))", "C-Term(Amidated)"]) == \
        "PEPTIDEK(Label:13C(6)15N(2))(Amidated)"


def test_protein_terminal_qualifier_is_dropped():
    assert translate("MPEPTIDE", "N-Term(Prot)(Acetyl); M1(Oxidation)") == "(Acetyl)M(Oxidation)PEPTIDE"


def test_last_terminal_tag_wins():
    assert translate("PEPTIDE", "N-Term(Acetyl); N-Term(Formyl)") == "(Formyl)PEPTIDE"


def test_placeholder_residue_is_substituted():
    assert translate("PEXTIDE", "X3(L)") == "PELTIDE"
    assert translate("PEXTIDE", "X3(L); L3(Methyl)") == "PEL(Methyl)TIDE"


def test_split_modifications_accepts_strings_and_lists():
    assert split_modifications(" M1(Oxidation);; C3(Carbamidomethyl) ") == ["M1(Oxidation)", "C3(Carbamidomethyl)"]
    assert split_modifications(["M1(Oxidation)", " "]) == ["M1(Oxidation)"]


@pytest.mark.parametrize("mods", [
    "T4(Phospho); M1(Oxidation)",
    "T9(Phospho)",
    "T0(Phospho)",
    "Phospho",
    "Tx(Phospho)",
])
def test_bad_tags_raise(mods):
    with pytest.raises(InputContractViolation):
        translate("MPETIDE", mods)


def test_decode_inverts_translate():
    bracketed = translate("PEPTIDEK", "N-Term(Acetyl); T4(Phospho); K8(Label:13C(6)15N(2))")
    sequence, tags = decode(bracketed)
    assert sequence == "PEPTIDEK"
    assert tags == ["N-Term(Acetyl)", "T4(Phospho)", "K8(Label:13C(6)15N(2))"]
    assert translate(sequence, tags) == bracketed


def test_decode_rejects_unbalanced_parentheses():
    with pytest.raises(InputContractViolation):
        decode("PEPT(Phospho")
