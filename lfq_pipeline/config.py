import copy
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import InputContractViolation


NORMALIZATION_METHODS = ("median", "quantile", "none")
QUANT_MODES = ("unique", "indistinguishable", "greedy")
AVERAGING_METHODS = ("mean", "weighted_mean", "median", "sum")
MZ_REFERENCES = ("precursor", "peptide")
MZ_UNITS = ("ppm", "Da")

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "run": {
        "name": "lfq",
        "scratch_dir": "scratch",
        "output_dir": "results",
        "log_file": "logs/lfq_pipeline.log",
    },
    "openms": {
        "bin_dir": None,
        "share_name": "OpenMS",
        "exe_suffix": "",
        "threads": 1,
    },
    "inputs": {
        "raw_files": [],
        "feature_files": [],
        "mzml_files": [],
        "psms": None,
        "fasta": None,
    },
    "feature_detection": {
        "charge_low": 1,
        "charge_high": 5,
        "mz_tolerance": 10.0,
        "mz_unit": "ppm",
        "rt_typical": 30.0,
        "rt_min": 3.0,
        "averagine_similarity": 0.3,
    },
    "linking": {
        "perform_alignment": True,
        "rt_threshold_min": 1.0,
        "mz_threshold_ppm": 10.0,
    },
    "id_mapping": {
        "rt_threshold_min": 0.33,
        "mz_threshold_ppm": 10.0,
        "q_value_threshold": 0.01,
        "mz_reference": "peptide",
    },
    "normalization": {
        "method": "median",
        "accession_filter": "",
        "description_filter": "",
    },
    "protein_quant": {
        "mode": "indistinguishable",
        "protein_fdr": 0.05,
        "fido_pep_threshold": 0.3,
        "top": 0,
        "averaging": "sum",
        "include_all": False,
        "filter_charge": False,
        "fix_peptides": False,
        "add_decoys": True,
    },
}


def parse_bracketed_list(text: str) -> List[str]:
    """
    "[a.raw, b.raw]" -> ["a.raw", "b.raw"]. Items may be quoted.
    """
    s = str(text).strip()
    if not (s.startswith("[") and s.endswith("]")):
        raise InputContractViolation(f"Expected a bracketed list like [a, b], got: {text!r}")
    inner = s[1:-1].strip()
    if not inner:
        return []
    items = []
    for part in inner.split(","):
        item = part.strip().strip("'\"").strip()
        if not item:
            raise InputContractViolation(f"Empty item in list: {text!r}")
        items.append(item)
    return items


def _number(problems: List[str], key: str, value, kind):
    try:
        return kind(value)
    except (TypeError, ValueError):
        problems.append(f"{key} must be a number, got {value!r}")
        return None


@dataclass
class PipelineConfig:
    """
    Wrapper for the YAML run config. Relative paths are resolved against
    `base_dir` (the directory holding the config file).
    Commonly used values are properties; the rest is read via section().
    """
    raw: Dict[str, Any]
    base_dir: Path = field(default_factory=Path.cwd)

    def section(self, name: str) -> Dict[str, Any]:
        merged = copy.deepcopy(DEFAULTS.get(name, {}))
        merged.update(self.raw.get(name) or {})
        return merged

    def _path(self, value) -> Path:
        p = Path(str(value)).expanduser()
        return p if p.is_absolute() else (self.base_dir / p)

    def _path_list(self, section: str, key: str) -> List[Path]:
        value = self.section(section).get(key)
        if value is None:
            return []
        if isinstance(value, str):
            value = parse_bracketed_list(value)
        return [self._path(v) for v in value]

    # ---- run ----
    @property
    def name(self) -> str:
        return str(self.section("run")["name"])

    @property
    def scratch_dir(self) -> Path:
        return self._path(self.section("run")["scratch_dir"])

    @property
    def output_dir(self) -> Path:
        return self._path(self.section("run")["output_dir"])

    @property
    def log_file(self) -> Optional[Path]:
        v = self.section("run")["log_file"]
        return self._path(v) if v else None

    # ---- openms ----
    @property
    def bin_dir(self) -> Optional[Path]:
        v = self.section("openms")["bin_dir"]
        return self._path(v) if v else None

    @property
    def share_name(self) -> str:
        return str(self.section("openms")["share_name"])

    @property
    def exe_suffix(self) -> str:
        return str(self.section("openms")["exe_suffix"] or "")

    @property
    def threads(self) -> int:
        return int(self.section("openms")["threads"])

    # ---- inputs ----
    @property
    def raw_files(self) -> List[Path]:
        return self._path_list("inputs", "raw_files")

    @property
    def feature_files(self) -> List[Path]:
        return self._path_list("inputs", "feature_files")

    @property
    def mzml_files(self) -> List[Path]:
        return self._path_list("inputs", "mzml_files")

    @property
    def detect_features(self) -> bool:
        """True when samples come as mzML and features still have to be found."""
        return not self.feature_files and bool(self.mzml_files)

    @property
    def psms(self) -> Optional[Path]:
        v = self.section("inputs")["psms"]
        return self._path(v) if v else None

    @property
    def fasta(self) -> Optional[Path]:
        v = self.section("inputs")["fasta"]
        return self._path(v) if v else None

    # ---- checks ----
    def validate(self) -> None:
        """
        Raise InputContractViolation for anything that would make a tool
        fail later. Nothing is executed here.
        """
        problems = []

        if self.bin_dir is None:
            problems.append("openms.bin_dir is not set")

        raw_files = self.raw_files
        if not raw_files:
            problems.append("inputs.raw_files must list at least one sample")

        if self.feature_files and self.mzml_files:
            problems.append("give either inputs.feature_files or inputs.mzml_files, not both")
        sample_files = self.feature_files or self.mzml_files
        if not sample_files:
            problems.append("inputs.feature_files (or inputs.mzml_files) is empty")
        elif raw_files and len(sample_files) != len(raw_files):
            problems.append(
                f"{len(sample_files)} feature/mzML files for {len(raw_files)} raw files"
            )
        for p in sample_files:
            if not p.exists():
                problems.append(f"input file not found: {p}")

        for key, p in (("psms", self.psms), ("fasta", self.fasta)):
            if p is None:
                problems.append(f"inputs.{key} is not set")
            elif not p.exists():
                problems.append(f"inputs.{key} not found: {p}")

        norm = self.section("normalization")
        pq = self.section("protein_quant")
        idm = self.section("id_mapping")
        ffm = self.section("feature_detection")
        choices = [
            ("normalization.method", norm["method"], NORMALIZATION_METHODS),
            ("protein_quant.mode", pq["mode"], QUANT_MODES),
            ("protein_quant.averaging", pq["averaging"], AVERAGING_METHODS),
            ("id_mapping.mz_reference", idm["mz_reference"], MZ_REFERENCES),
            ("feature_detection.mz_unit", ffm["mz_unit"], MZ_UNITS),
        ]
        for key, value, allowed in choices:
            if value not in allowed:
                problems.append(f"{key} must be one of {'|'.join(allowed)}, got {value!r}")

        for key, value in (
            ("id_mapping.q_value_threshold", idm["q_value_threshold"]),
            ("protein_quant.protein_fdr", pq["protein_fdr"]),
            ("protein_quant.fido_pep_threshold", pq["fido_pep_threshold"]),
        ):
            value = _number(problems, key, value, float)
            if value is not None and not 0.0 <= value <= 1.0:
                problems.append(f"{key} must be within [0, 1], got {value}")

        top = _number(problems, "protein_quant.top", pq["top"], int)
        if top is not None and top < 0:
            problems.append("protein_quant.top must be >= 0")
        threads = _number(problems, "openms.threads", self.section("openms")["threads"], int)
        if threads is not None and threads < 1:
            problems.append("openms.threads must be >= 1")
        low = _number(problems, "feature_detection.charge_low", ffm["charge_low"], int)
        high = _number(problems, "feature_detection.charge_high", ffm["charge_high"], int)
        if low is not None and high is not None and low > high:
            problems.append("feature_detection.charge_low is larger than charge_high")

        if problems:
            raise InputContractViolation("Invalid configuration:\n  - " + "\n  - ".join(problems))


def load_config(path) -> PipelineConfig:
    """
    Load user YAML config into a PipelineConfig instance.
    """
    path = Path(path)
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InputContractViolation(f"Config {path} must be a YAML mapping")
    return PipelineConfig(raw=data, base_dir=path.resolve().parent)


def write_config_template(path, bin_dir: str = "/opt/OpenMS/bin") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = f"""run:
  name: lfq
  # relative paths are resolved against the directory of this file
  scratch_dir: scratch
  output_dir: results
  log_file: logs/lfq_pipeline.log

openms:
  bin_dir: {bin_dir}
  # tools read their data from <bin_dir>/../share/<share_name>
  share_name: OpenMS
  exe_suffix: ""
  threads: 1

inputs:
  # one entry per sample, same order everywhere; "[a.raw, b.raw]" also works
  raw_files:
    - sample_1.raw
    - sample_2.raw
  feature_files:
    - sample_1.featureXML
    - sample_2.featureXML
  # instead of feature_files: run FeatureFinderMultiplex on these
  # mzml_files: [sample_1.mzML, sample_2.mzML]
  psms: psms.tsv
  fasta: database.fasta

feature_detection:
  charge_low: 1
  charge_high: 5
  mz_tolerance: 10
  mz_unit: ppm
  rt_typical: 30
  rt_min: 3
  averagine_similarity: 0.3

linking:
  perform_alignment: true
  rt_threshold_min: 1.0
  mz_threshold_ppm: 10

id_mapping:
  rt_threshold_min: 0.33
  mz_threshold_ppm: 10
  q_value_threshold: 0.01
  mz_reference: peptide   # precursor|peptide

normalization:
  method: median   # median|quantile|none
  accession_filter: ""
  description_filter: ""

protein_quant:
  mode: indistinguishable   # unique|indistinguishable|greedy
  protein_fdr: 0.05         # 1.0 disables protein level filtering
  fido_pep_threshold: 0.3
  top: 0
  averaging: sum            # mean|weighted_mean|median|sum
  include_all: false
  filter_charge: false
  fix_peptides: false
  # append REV_ decoys to the FASTA before indexing
  add_decoys: true
"""
    path.write_text(text, encoding="utf-8")
    return path
