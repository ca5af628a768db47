import os
import sys
from pathlib import Path

import pytest
import yaml

import fake_openms
from lfq_pipeline.config import load_config
from lfq_pipeline.sink import QuantificationSink

TESTS_DIR = Path(__file__).resolve().parent

# (feature id, RT [s], m/z, intensity, charge)
SAMPLE_FEATURES = {
    "sample_1": [
        ("f_101", 600.0, 500.25, 1.0e6, 2),
        ("f_102", 1200.0, 600.30, 2.0e6, 2),
        ("f_103", 1800.0, 700.35, 3.0e6, 3),
    ],
    "sample_2": [
        ("f_201", 606.0, 500.2502, 1.5e6, 2),
        ("f_203", 1794.0, 700.3502, 3.5e6, 3),
    ],
}

PSM_TABLE = """\
workflow_id\tpeptide_id\tsequence\tmodifications\tcharge\tmz\trt\tpep\tq_value\tis_decoy\taccessions\tdescriptions\tspectrum_file
1\t1\tPEPTIDEK\t\t2\t500.25\t10.0\t0.01\t0.001\tfalse\tP1\tProtein one\tsample_1.raw
1\t2\tPEPTLDEK\t\t2\t500.2501\t10.02\t0.2\t0.005\tfalse\tP1\tProtein one\tsample_1.raw
1\t3\tKEDITPEP\t\t2\t500.25\t10.0\t0.001\t0.5\ttrue\tREV_P1\t\tsample_1.raw
1\t4\tACDEFGHIK\tC2(Carbamidomethyl)\t2\t600.30\t20.0\t0.05\t0.008\tfalse\tP2\tProtein two\tsample_1.raw
1\t5\tLMNPQR\t\t3\t700.35\t30.0\t0.5\t0.2\tfalse\tP3\tProtein three\tsample_1.raw
"""

FASTA = """\
>P1 Protein one
PEPTIDEKPEPTLDEKAAA
>P2 Protein two
ACDEFGHIKRR
>P3 Protein three
LMNPQRST
>P1 duplicate entry
WWWW
"""


class MemorySink(QuantificationSink):
    def __init__(self):
        self.published = []

    def publish(self, result):
        self.published.append(result)


def write_feature_xml(path, features):
    fake_openms.write_features(
        str(path),
        [{"id": fid, "rt": rt, "mz": mz, "it": it, "charge": z} for fid, rt, mz, it, z in features],
    )
    return path


def write_mzml(path, features, obsolete_terms=True):
    """One spectrum per feature; the fake FeatureFinderMultiplex reads them back as features."""
    spectra = []
    for n, (_, rt, mz, it, z) in enumerate(features):
        obsolete = '<cvParam cvRef="MS" accession="MS:1000498" name="full scan" value=""/>' if obsolete_terms else ""
        spectra.append(f"""
      <spectrum index="{n}" id="scan={n + 1}" defaultArrayLength="0">
        {obsolete}
        <cvParam cvRef="MS" accession="MS:1000504" name="base peak m/z" value="{mz}"/>
        <cvParam cvRef="MS" accession="MS:1000505" name="base peak intensity" value="{it}"/>
        <cvParam cvRef="MS" accession="MS:1000041" name="charge state" value="{z}"/>
        <scanList count="1">
          <scan>
            <cvParam cvRef="MS" accession="MS:1000016" name="scan start time" value="{rt / 60.0}" unitAccession="UO:0000031"/>
          </scan>
        </scanList>
      </spectrum>""")
    Path(path).write_text(
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<mzML xmlns="http://psi.hupo.org/ms/mzml" version="1.1.0">\n'
        '  <run id="run_1">\n'
        f'    <spectrumList count="{len(features)}">{"".join(spectra)}\n'
        "    </spectrumList>\n"
        "  </run>\n"
        "</mzML>\n"
    )
    return path


@pytest.fixture
def fake_openms_bin(tmp_path):
    """
    <tmp>/openms/bin/<Tool> launchers plus an empty share/OpenMS directory.
    """
    root = tmp_path / "openms"
    bin_dir = root / "bin"
    bin_dir.mkdir(parents=True)
    (root / "share" / "OpenMS").mkdir(parents=True)
    for tool in fake_openms.TEMPLATES:
        launcher = bin_dir / tool
        launcher.write_text(
            f"#!{sys.executable}\n"
            "import sys\n"
            f"sys.path.insert(0, {str(TESTS_DIR)!r})\n"
            "import fake_openms\n"
            f"sys.exit(fake_openms.main({tool!r}, sys.argv[1:]))\n"
        )
        os.chmod(launcher, 0o755)
    return bin_dir


@pytest.fixture
def memory_sink():
    return MemorySink()


@pytest.fixture
def make_project(tmp_path, fake_openms_bin):
    """
    Factory writing a small LFQ project (features or mzML, PSMs, FASTA and
    a YAML config) and returning its loaded PipelineConfig.
    """

    def _make(samples=("sample_1", "sample_2"), mzml=False, **sections):
        project = tmp_path / "project"
        project.mkdir(exist_ok=True)

        sample_files = []
        for name in samples:
            if mzml:
                sample_files.append(write_mzml(project / f"{name}.mzML", SAMPLE_FEATURES[name]).name)
            else:
                sample_files.append(write_feature_xml(project / f"{name}.featureXML", SAMPLE_FEATURES[name]).name)
        (project / "psms.tsv").write_text(PSM_TABLE)
        (project / "database.fasta").write_text(FASTA)

        raw = {
            "run": {"name": "test", "scratch_dir": "scratch", "output_dir": "results", "log_file": None},
            "openms": {"bin_dir": str(fake_openms_bin)},
            "inputs": {
                "raw_files": [f"{name}.raw" for name in samples],
                ("mzml_files" if mzml else "feature_files"): sample_files,
                "psms": "psms.tsv",
                "fasta": "database.fasta",
            },
        }
        for section, values in sections.items():
            raw.setdefault(section, {}).update(values)

        config_path = project / "lfq.yaml"
        with open(config_path, "w") as f:
            yaml.safe_dump(raw, f)
        return load_config(config_path)

    return _make
