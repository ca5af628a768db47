import pytest
from Bio import SeqIO
from lxml import etree

import fake_openms
from conftest import FASTA, SAMPLE_FEATURES, write_feature_xml, write_mzml
from lfq_pipeline.errors import DataJoinFailure
from lfq_pipeline.openms_files import (
    deduplicate_fasta,
    describe_accessions,
    fasta_descriptions,
    read_feature_rts,
    restore_original_rts,
    strip_obsolete_cv_terms,
)


def as_dicts(features, rt_shift=0.0):
    return [{"id": fid, "rt": rt + rt_shift, "mz": mz, "it": it, "charge": z} for fid, rt, mz, it, z in features]


def test_read_feature_rts_strips_prefix(tmp_path):
    path = write_feature_xml(tmp_path / "a.featureXML", SAMPLE_FEATURES["sample_1"])
    assert read_feature_rts(path) == {"101": 600.0, "102": 1200.0, "103": 1800.0}


def test_restore_original_rts(tmp_path):
    originals = [
        write_feature_xml(tmp_path / "s1.featureXML", SAMPLE_FEATURES["sample_1"]),
        write_feature_xml(tmp_path / "s2.featureXML", SAMPLE_FEATURES["sample_2"]),
    ]
    # consensus built from RT-shifted copies, as after map alignment
    s1 = as_dicts(SAMPLE_FEATURES["sample_1"], rt_shift=-3.0)
    s2 = as_dicts(SAMPLE_FEATURES["sample_2"], rt_shift=12.0)
    consensus = tmp_path / "linked.consensusXML"
    fake_openms.write_consensus(
        str(consensus), ["s1", "s2"],
        [[(0, s1[0]), (1, s2[0])], [(0, s1[1])], [(0, s1[2]), (1, s2[1])]],
    )

    out = tmp_path / "restored.consensusXML"
    index = restore_original_rts(consensus, originals, out)

    assert float(index["201"].get("rt")) == 606.0
    tree = etree.parse(str(out))
    rts = {e.get("id"): float(e.get("rt")) for e in tree.iter("element")}
    assert rts == {"101": 600.0, "102": 1200.0, "103": 1800.0, "201": 606.0, "203": 1794.0}
    # centroids keep the aligned values
    assert float(tree.find(".//centroid").get("rt")) == pytest.approx((597.0 + 618.0) / 2)


def test_restore_fails_on_unknown_feature(tmp_path):
    original = write_feature_xml(tmp_path / "s1.featureXML", SAMPLE_FEATURES["sample_1"])
    consensus = tmp_path / "linked.consensusXML"
    fake_openms.write_consensus(str(consensus), ["s1"], [[(0, f)] for f in as_dicts(SAMPLE_FEATURES["sample_1"][:2])])
    with pytest.raises(DataJoinFailure, match="103"):
        restore_original_rts(consensus, [original], tmp_path / "out.consensusXML")


def test_strip_obsolete_cv_terms(tmp_path):
    mzml = write_mzml(tmp_path / "run.mzML", SAMPLE_FEATURES["sample_1"])
    assert strip_obsolete_cv_terms([mzml]) == 3
    text = mzml.read_text()
    assert "MS:1000498" not in text
    assert "MS:1000504" in text
    assert not (tmp_path / "run_tmp.mzML").exists()
    assert strip_obsolete_cv_terms([mzml]) == 0


def test_deduplicate_fasta(tmp_path):
    src = tmp_path / "db.fasta"
    src.write_text(FASTA)
    dst = tmp_path / "dedup.fasta"
    assert deduplicate_fasta(src, dst) == 3
    records = list(SeqIO.parse(str(dst), "fasta"))
    assert [r.id for r in records] == ["P1", "P2", "P3"]
    assert str(records[0].seq) == "PEPTIDEKPEPTLDEKAAA"


def test_fasta_descriptions(tmp_path):
    src = tmp_path / "db.fasta"
    src.write_text(">P1 Protein one\nPEPTIDE\n>P2\nACDE\n")
    assert fasta_descriptions(src) == {"P1": "Protein one"}
    assert fasta_descriptions(tmp_path / "missing.fasta") == {}


def test_describe_accessions():
    descriptions = {"P1": "Protein one", "P2": "Protein two"}
    assert describe_accessions("P1/P2", descriptions) == "Protein one /// Protein two"
    assert describe_accessions("P1/P9", descriptions) == "Protein one"
    assert describe_accessions("", descriptions) == ""
