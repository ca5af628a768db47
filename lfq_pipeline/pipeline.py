"""
LFQ pipeline: feature maps + search results -> quantified features,
peptides and proteins.

Stages (each one a TOPP tool run unless noted):

  0) FeatureFinderMultiplex per sample      (only for mzML input)
  1) 1 sample:  FileConverter featureXML -> consensusXML
     N samples: MapAlignerPoseClustering (optional) + FeatureLinkerUnlabeledQT
  2) restore pre-alignment RTs               (python)
  3) ConsensusMapNormalizer                  (skipped for method "none")
  4) FASTA dedup + DecoyDatabase
  5) export filtered PSMs, PeptideIndexer, IDMapper
  6) assemble consensus features             (python)
  7) export unfiltered PSMs, PeptideIndexer, FidoAdapter,
     FalseDiscoveryRate + IDFilter, ProteinQuantifier
  8) parse ProteinQuantifier tables          (python)

Every stage reads its inputs from, and registers its outputs in, the
RunContext. Results are published only after the last stage succeeded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import PipelineConfig
from .consensus import (
    PEPTIDE_TABLE,
    PROTEIN_TABLE,
    AbundanceColumnMap,
    assemble_consensus_records,
    parse_quant_table,
)
from .errors import DataJoinFailure, InputContractViolation
from .identifications import FILTERED, UNFILTERED, PsmIndex, PsmRecord, export_idxml, load_psms
from .ini_params import ParamDocument, materialize_defaults
from .openms_files import deduplicate_fasta, fasta_descriptions, restore_original_rts, strip_obsolete_cv_terms
from .sink import QuantificationResult, QuantificationSink
from .tool_runner import ToolRunner
from .utils import ensure_dir, timing

logger = logging.getLogger(__name__)

DECOY_STRING = "REV_"

# artifact registry keys
FEATURES = "features"
ALIGNED = "aligned_features"
CONSENSUS = "consensus"
RESTORED = "consensus_orig_rt"
RESTORED_INDEX = "consensus_orig_rt_index"
NORMALIZED = "normalized"
FASTA = "fasta"
FILTERED_IDS = "filtered_ids"
FILTERED_INDEXED = "filtered_ids_indexed"
IDMAPPED = "idmapped"
UNFILTERED_IDS = "unfiltered_ids"
UNFILTERED_INDEXED = "unfiltered_ids_indexed"
PROTEIN_GROUPS = "protein_groups"
PQ_PEPTIDES = "pq_peptides"
PQ_PROTEINS = "pq_proteins"

ProgressCallback = Callable[[float, str], None]


@dataclass
class RunContext:
    cfg: PipelineConfig
    runner: ToolRunner
    raw_files: List[Path]
    total_steps: int
    progress: Optional[ProgressCallback] = None
    current_step: int = 0
    artifacts: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.raw_files:
            raise InputContractViolation("At least one sample is required")

    @property
    def n_samples(self) -> int:
        return len(self.raw_files)

    @property
    def threads(self) -> int:
        return self.cfg.threads

    def scratch(self, name: str) -> Path:
        return ensure_dir(self.cfg.scratch_dir) / name

    def register(self, stage: str, value) -> None:
        if isinstance(value, list) and len(value) != self.n_samples:
            raise InputContractViolation(
                f"{stage}: {len(value)} files for {self.n_samples} samples"
            )
        self.artifacts[stage] = value

    def artifact(self, stage: str):
        try:
            return self.artifacts[stage]
        except KeyError:
            raise DataJoinFailure(f"No output registered for stage '{stage}'") from None

    def has(self, stage: str) -> bool:
        return stage in self.artifacts

    def advance(self, label: str, steps: int = 1) -> float:
        self.current_step = min(self.current_step + steps, self.total_steps)
        fraction = self.current_step / self.total_steps if self.total_steps else 1.0
        logger.info("[%d/%d] %s done", self.current_step, self.total_steps, label)
        if self.progress is not None:
            self.progress(fraction, label)
        return fraction


# -------------------------- planning --------------------------

def plan_steps(cfg: PipelineConfig, n_samples: int) -> List[str]:
    """Tool runs of a pipeline run, in execution order."""
    steps = []
    if cfg.detect_features:
        steps += [f"FeatureFinderMultiplex ({i + 1}/{n_samples})" for i in range(n_samples)]
    if n_samples == 1:
        steps.append("FileConverter")
    else:
        if cfg.section("linking")["perform_alignment"]:
            steps.append("MapAlignerPoseClustering")
        steps.append("FeatureLinkerUnlabeledQT")
    if cfg.section("normalization")["method"] != "none":
        steps.append("ConsensusMapNormalizer")
    pq = cfg.section("protein_quant")
    if pq["add_decoys"]:
        steps.append("DecoyDatabase")
    steps += ["PeptideIndexer (filtered)", "IDMapper", "PeptideIndexer (unfiltered)"]
    if pq["mode"] != "unique":
        steps.append("FidoAdapter")
        if float(pq["protein_fdr"]) < 1.0:
            steps += ["FalseDiscoveryRate", "IDFilter"]
    steps.append("ProteinQuantifier")
    return steps


def count_steps(cfg: PipelineConfig, n_samples: int) -> int:
    return len(plan_steps(cfg, n_samples))


# -------------------------- helpers --------------------------

def _run_tool(ctx: RunContext, tool: str, params: Dict[str, Any],
              label: Optional[str] = None,
              patch: Optional[Callable[[ParamDocument], None]] = None) -> None:
    """Default INI -> patch -> run -> progress."""
    ini_path = ctx.scratch(f"{tool}.ini")
    doc = materialize_defaults(ctx.runner, tool, ini_path, params)
    if patch is not None:
        patch(doc)
    logger.info("Starting %s", label or tool)
    ctx.runner.run(tool, ini_path)
    ctx.advance(label or tool)


# -------------------------- stages --------------------------

@timing
def detect_features(ctx: RunContext, mzml_files: List[Path]) -> List[Path]:
    ffm = ctx.cfg.section("feature_detection")
    strip_obsolete_cv_terms(mzml_files)

    outputs = []
    for i, mzml in enumerate(mzml_files):
        out = ctx.scratch(f"{Path(mzml).stem}.featureXML")
        _run_tool(
            ctx, "FeatureFinderMultiplex",
            {
                "in": mzml,
                "out_features": out,
                "threads": ctx.threads,
                "algorithm:labels": "",
                "algorithm:charge": f"{ffm['charge_low']}:{ffm['charge_high']}",
                "algorithm:mz_unit": ffm["mz_unit"],
                "algorithm:mz_tolerance": ffm["mz_tolerance"],
                "algorithm:rt_typical": ffm["rt_typical"],
                "algorithm:rt_min": ffm["rt_min"],
                "algorithm:averagine_similarity": ffm["averagine_similarity"],
            },
            label=f"FeatureFinderMultiplex ({i + 1}/{len(mzml_files)})",
        )
        outputs.append(out)
    ctx.register(FEATURES, outputs)
    return outputs


@timing
def convert_single(ctx: RunContext) -> Path:
    feature_file = ctx.artifact(FEATURES)[0]
    out = ctx.scratch(f"{Path(feature_file).stem}.consensusXML")
    _run_tool(ctx, "FileConverter", {
        "in": feature_file,
        "in_type": "featureXML",
        "out": out,
        "out_type": "consensusXML",
        "threads": ctx.threads,
    })
    ctx.register(CONSENSUS, out)
    return out


@timing
def align_maps(ctx: RunContext) -> List[Path]:
    linking = ctx.cfg.section("linking")
    inputs = ctx.artifact(FEATURES)
    outputs = [ctx.scratch(f"{Path(f).stem}.aligned.featureXML") for f in inputs]
    _run_tool(
        ctx, "MapAlignerPoseClustering",
        {
            "in": inputs,
            "out": outputs,
            "threads": ctx.threads,
            "algorithm:superimposer:max_num_peaks_considered": 10000,
            "algorithm:pairfinder:ignore_charge": False,
        },
        patch=lambda doc: doc.set_thresholds(linking["mz_threshold_ppm"], linking["rt_threshold_min"]),
    )
    ctx.register(ALIGNED, outputs)
    return outputs


@timing
def link_features(ctx: RunContext) -> Path:
    linking = ctx.cfg.section("linking")
    inputs = ctx.artifact(ALIGNED) if ctx.has(ALIGNED) else ctx.artifact(FEATURES)
    out = ctx.scratch("featureXML_consensus.consensusXML")
    _run_tool(
        ctx, "FeatureLinkerUnlabeledQT",
        {
            "in": inputs,
            "out": out,
            "threads": ctx.threads,
            "algorithm:ignore_charge": False,
        },
        patch=lambda doc: doc.set_thresholds(linking["mz_threshold_ppm"], linking["rt_threshold_min"]),
    )
    ctx.register(CONSENSUS, out)
    return out


@timing
def restore_rts(ctx: RunContext) -> Path:
    out = ctx.scratch("Consensus_orig_RT.consensusXML")
    index = restore_original_rts(ctx.artifact(CONSENSUS), ctx.artifact(FEATURES), out)
    ctx.register(RESTORED, out)
    ctx.register(RESTORED_INDEX, index)
    return out


@timing
def normalize_intensities(ctx: RunContext) -> Path:
    norm = ctx.cfg.section("normalization")
    source = ctx.artifact(RESTORED)
    if norm["method"] == "none":
        logger.info("Normalization disabled")
        ctx.register(NORMALIZED, source)
        return source

    out = ctx.scratch("normalized.consensusXML")
    _run_tool(ctx, "ConsensusMapNormalizer", {
        "in": source,
        "out": out,
        "algorithm_type": norm["method"],
        "accession_filter": norm["accession_filter"],
        "description_filter": norm["description_filter"],
        "threads": ctx.threads,
    })
    ctx.register(NORMALIZED, out)
    return out


@timing
def prepare_fasta(ctx: RunContext) -> Path:
    """Copy the search database without duplicate accessions, then append decoys."""
    out = ctx.scratch("peptide_indexer.fasta")
    deduplicate_fasta(ctx.cfg.fasta, out)
    if ctx.cfg.section("protein_quant")["add_decoys"]:
        _run_tool(ctx, "DecoyDatabase", {
            "in": [out],
            "out": out,
            "append": True,
            "decoy_string_position": "prefix",
            "decoy_string": DECOY_STRING,
            "threads": ctx.threads,
        })
    ctx.register(FASTA, out)
    return out


def export_identifications(ctx: RunContext, psms: List[PsmRecord], mode: str) -> Path:
    idm = ctx.cfg.section("id_mapping")
    pq = ctx.cfg.section("protein_quant")
    if mode == FILTERED:
        out, stage = ctx.scratch("filtered_psms.idXML"), FILTERED_IDS
    else:
        out, stage = ctx.scratch("all_psms.idXML"), UNFILTERED_IDS
    export_idxml(
        psms, out, mode=mode,
        q_value_threshold=float(idm["q_value_threshold"]),
        pep_threshold=float(pq["fido_pep_threshold"]),
    )
    ctx.register(stage, out)
    return out


@timing
def index_peptides(ctx: RunContext, source: str, target: str) -> Path:
    idxml = Path(ctx.artifact(source))
    out = ctx.scratch(f"{idxml.stem}_peptides_indexed.idXML")
    kind = "filtered" if source == FILTERED_IDS else "unfiltered"
    _run_tool(
        ctx, "PeptideIndexer",
        {
            "in": idxml,
            "fasta": ctx.artifact(FASTA),
            "out": out,
            "prefix": True,
            "decoy_string": DECOY_STRING,
            "missing_decoy_action": "warn",
            "allow_unmatched": True,
            "write_protein_description": True,
            "threads": ctx.threads,
            "enzyme:specificity": "none",
        },
        label=f"PeptideIndexer ({kind})",
    )
    ctx.register(target, out)
    return out


@timing
def map_identifications(ctx: RunContext) -> Path:
    idm = ctx.cfg.section("id_mapping")
    out = ctx.scratch("idmapped.consensusXML")
    _run_tool(ctx, "IDMapper", {
        "in": ctx.artifact(NORMALIZED),
        "id": ctx.artifact(FILTERED_INDEXED),
        "out": out,
        "mz_tolerance": idm["mz_threshold_ppm"],
        "rt_tolerance": float(idm["rt_threshold_min"]) * 60.0,
        "mz_reference": idm["mz_reference"],
        "feature:use_centroid_mz": idm["mz_reference"] == "peptide",
        "consensus:use_subelements": True,
        "threads": ctx.threads,
    })
    ctx.register(IDMAPPED, out)
    return out


@timing
def infer_protein_groups(ctx: RunContext) -> Path:
    mode = ctx.cfg.section("protein_quant")["mode"]
    source = ctx.artifact(UNFILTERED_INDEXED)
    if mode == "unique":
        ctx.register(PROTEIN_GROUPS, source)
        return source

    out = ctx.scratch("fido_results.idXML")
    _run_tool(ctx, "FidoAdapter", {
        "in": source,
        "out": out,
        "greedy_group_resolution": mode == "greedy",
        "threads": ctx.threads,
    })
    ctx.register(PROTEIN_GROUPS, out)
    return out


@timing
def filter_protein_fdr(ctx: RunContext) -> Path:
    pq = ctx.cfg.section("protein_quant")
    source = ctx.artifact(PROTEIN_GROUPS)
    fdr = float(pq["protein_fdr"])
    if pq["mode"] == "unique" or fdr >= 1.0:
        return source

    fdr_out = ctx.scratch("fido_results_fdr_output.idXML")
    _run_tool(ctx, "FalseDiscoveryRate", {
        "in": source,
        "out": fdr_out,
        "proteins_only": True,
        "threads": ctx.threads,
    })

    out = ctx.scratch("fido_results_idfilter_output.idXML")
    _run_tool(ctx, "IDFilter", {
        "in": fdr_out,
        "out": out,
        "delete_unreferenced_peptide_hits": True,
        "score:prot": fdr,
        "threads": ctx.threads,
    })
    ctx.register(PROTEIN_GROUPS, out)
    return out


@timing
def quantify(ctx: RunContext) -> None:
    pq = ctx.cfg.section("protein_quant")
    proteins_out = ctx.scratch("pq_proteins.csv")
    peptides_out = ctx.scratch("pq_peptides.csv")
    params = {
        "in": ctx.artifact(IDMAPPED),
        "out": proteins_out,
        "peptide_out": peptides_out,
        "top": int(pq["top"]),
        "average": pq["averaging"],
        "include_all": bool(pq["include_all"]),
        "filter_charge": bool(pq["filter_charge"]),
        "consensus:fix_peptides": bool(pq["fix_peptides"]),
        "threads": ctx.threads,
    }
    if pq["mode"] != "unique":
        params["protein_groups"] = ctx.artifact(PROTEIN_GROUPS)
    _run_tool(ctx, "ProteinQuantifier", params)
    ctx.register(PQ_PEPTIDES, peptides_out)
    ctx.register(PQ_PROTEINS, proteins_out)


# -------------------------- driver --------------------------

def build_runner(cfg: PipelineConfig, status: Optional[Callable[[str], None]] = None) -> ToolRunner:
    return ToolRunner(
        bin_dir=cfg.bin_dir,
        scratch_dir=cfg.scratch_dir,
        share_name=cfg.share_name,
        exe_suffix=cfg.exe_suffix,
        status=status,
    )


@timing
def run_pipeline(cfg: PipelineConfig, sink: QuantificationSink,
                 runner: Optional[ToolRunner] = None,
                 progress: Optional[ProgressCallback] = None) -> QuantificationResult:
    """
    Run every stage and publish the tables to `sink`. Nothing is published
    if any stage fails; the error is logged and re-raised.
    """
    cfg.validate()
    raw_files = cfg.raw_files
    n = len(raw_files)
    ctx = RunContext(
        cfg=cfg,
        runner=runner or build_runner(cfg),
        raw_files=raw_files,
        total_steps=count_steps(cfg, n),
        progress=progress,
    )
    logger.info("LFQ run '%s': %d sample(s), %d tool runs", cfg.name, n, ctx.total_steps)

    try:
        columns = AbundanceColumnMap.build(raw_files)
        psms = load_psms(cfg.psms)
        psm_index = PsmIndex(psms)

        if cfg.detect_features:
            detect_features(ctx, cfg.mzml_files)
        else:
            ctx.register(FEATURES, cfg.feature_files)

        if n == 1:
            convert_single(ctx)
        else:
            if cfg.section("linking")["perform_alignment"]:
                align_maps(ctx)
            link_features(ctx)

        restore_rts(ctx)
        normalize_intensities(ctx)
        prepare_fasta(ctx)

        export_identifications(ctx, psms, FILTERED)
        index_peptides(ctx, FILTERED_IDS, FILTERED_INDEXED)
        map_identifications(ctx)
        features = assemble_consensus_records(
            ctx.artifact(IDMAPPED), ctx.artifact(RESTORED_INDEX), columns, psm_index
        )

        export_identifications(ctx, psms, UNFILTERED)
        index_peptides(ctx, UNFILTERED_IDS, UNFILTERED_INDEXED)
        infer_protein_groups(ctx)
        filter_protein_fdr(ctx)
        quantify(ctx)

        descriptions = fasta_descriptions(ctx.artifact(FASTA))
        peptides = parse_quant_table(ctx.artifact(PQ_PEPTIDES), PEPTIDE_TABLE, columns, descriptions)
        proteins = parse_quant_table(ctx.artifact(PQ_PROTEINS), PROTEIN_TABLE, columns, descriptions)

        result = QuantificationResult(columns=columns, features=features, peptides=peptides, proteins=proteins)
        sink.publish(result)
    except Exception:
        logger.exception("LFQ run '%s' failed, no results were published", cfg.name)
        raise
    return result
