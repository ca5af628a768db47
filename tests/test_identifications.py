import pytest
from lxml import etree

from conftest import PSM_TABLE
from lfq_pipeline.errors import DataJoinFailure, FileIOFailure, InputContractViolation
from lfq_pipeline.identifications import (
    FILTERED,
    UNFILTERED,
    PsmIndex,
    PsmRecord,
    export_idxml,
    load_psms,
    parse_back_reference,
)


@pytest.fixture
def psms(tmp_path):
    path = tmp_path / "psms.tsv"
    path.write_text(PSM_TABLE)
    return load_psms(path)


def hits(path):
    root = etree.parse(str(path)).getroot()
    return root, root.findall("IdentificationRun/PeptideIdentification")


def user_params(pep_id):
    return {up.get("name"): up.get("value") for up in pep_id.find("PeptideHit").findall("UserParam")}


def test_load_psms(psms):
    assert len(psms) == 5
    first, decoy, modified = psms[0], psms[2], psms[3]
    assert first.key == "1;1"
    assert first.modifications == ""
    assert first.descriptions == "Protein one"
    assert decoy.is_decoy and decoy.back_reference == "decoy_1;3"
    assert modified.modified_sequence == "AC(Carbamidomethyl)DEFGHIK"


def test_load_psms_optional_columns_default(tmp_path):
    path = tmp_path / "minimal.tsv"
    path.write_text("workflow_id\tpeptide_id\tsequence\tcharge\tmz\trt\n7\t9\tPEPTIDE\t2\t400.2\t12.5\n")
    (psm,) = load_psms(path)
    assert psm.pep == 1.0 and psm.q_value == 1.0
    assert psm.is_decoy is False
    assert psm.modified_sequence == "PEPTIDE"


def test_load_psms_missing_column(tmp_path):
    path = tmp_path / "bad.tsv"
    path.write_text("workflow_id\tsequence\n1\tPEPTIDE\n")
    with pytest.raises(InputContractViolation, match="peptide_id"):
        load_psms(path)


def test_load_psms_missing_file(tmp_path):
    with pytest.raises(FileIOFailure):
        load_psms(tmp_path / "nope.tsv")


def test_parse_back_reference():
    assert parse_back_reference("3;17") == (False, "3;17")
    assert parse_back_reference("decoy_3;17") == (True, "3;17")
    with pytest.raises(DataJoinFailure):
        parse_back_reference("317")


def test_psm_index_keeps_targets_and_decoys_apart():
    target = PsmRecord(1, 1, "PEPTIDE", 2, 400.0, 10.0)
    decoy = PsmRecord(1, 1, "EDITPEP", 2, 400.0, 10.0, is_decoy=True)
    index = PsmIndex([target, decoy])
    assert index.get("1;1") is target
    assert index.get("decoy_1;1") is decoy
    with pytest.raises(DataJoinFailure):
        index.get("1;2")


def test_export_filtered(tmp_path, psms):
    out = tmp_path / "filtered.idXML"
    assert export_idxml(psms, out, FILTERED, q_value_threshold=0.01) == 3

    root, pep_ids = hits(out)
    assert root.get("version") == "1.2"
    assert root.find("SearchParameters").get("db") == "fnord.fasta"
    run = root.find("IdentificationRun")
    assert run.get("search_engine") == "PD" and run.get("date") == "2011-11-11T11:11:11"

    assert [p.get("score_type") for p in pep_ids] == ["Percolator q-Value"] * 3
    assert {p.get("higher_score_better") for p in pep_ids} == {"false"}
    assert [user_params(p)["pd_peptide_id"] for p in pep_ids] == ["1;1", "1;2", "1;4"]

    first = pep_ids[0]
    assert float(first.get("RT")) == pytest.approx(600.0)
    assert float(first.find("PeptideHit").get("score")) == pytest.approx(0.001)
    assert pep_ids[2].find("PeptideHit").get("sequence") == "AC(Carbamidomethyl)DEFGHIK"


def test_export_unfiltered_writes_decoys_last(tmp_path, psms):
    out = tmp_path / "all.idXML"
    assert export_idxml(psms, out, UNFILTERED, pep_threshold=0.3) == 4

    _, pep_ids = hits(out)
    refs = [user_params(p)["pd_peptide_id"] for p in pep_ids]
    assert refs == ["1;1", "1;2", "1;4", "decoy_1;3"]
    assert {p.get("score_type") for p in pep_ids} == {"Posterior Probability_score"}
    assert float(pep_ids[0].find("PeptideHit").get("score")) == pytest.approx(0.99)
    assert float(user_params(pep_ids[0])["posterior_error_probability"]) == pytest.approx(0.01)


def test_load_psms_keeps_na_text(tmp_path):
    path = tmp_path / "na.tsv"
    path.write_text(
        "workflow_id\tpeptide_id\tsequence\tcharge\tmz\trt\tpep\taccessions\n"
        "1\t1\tNA\t2\t400.2\t12.5\t\tNA\n"
    )
    (psm,) = load_psms(path)
    assert psm.sequence == "NA"
    assert psm.accessions == "NA"
    assert psm.pep == 1.0


def test_export_unknown_mode(tmp_path, psms):
    with pytest.raises(InputContractViolation):
        export_idxml(psms, tmp_path / "x.idXML", "everything")
