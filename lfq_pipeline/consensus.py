"""
Consensus assembly: turn the final tool outputs into quantification records.

* consensus features come from the ID-mapped consensusXML; every element
  gets the identification with the lowest PEP among the (non-decoy) PSMs
  that IDMapper attached to it, and one intensity per sample
* peptide and protein abundances come from the two ProteinQuantifier tables

Per-sample values always go through an AbundanceColumnMap so that sample i
only ever writes column i.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from lxml import etree

from .errors import DataJoinFailure, FileIOFailure, InputContractViolation
from .identifications import PEPTIDE_ID_PARAM, PsmIndex, PsmRecord, parse_back_reference
from .openms_files import describe_accessions, parse_xml

logger = logging.getLogger(__name__)

PEPTIDE_TABLE = "peptides"
PROTEIN_TABLE = "proteins"

# fixed leading columns of the ProteinQuantifier outputs, abundances follow
LEADING_COLUMNS = {
    PEPTIDE_TABLE: ["peptide", "protein", "n_proteins", "charge"],
    PROTEIN_TABLE: ["protein", "n_proteins", "protein_score", "n_peptides"],
}

MISSING_ABUNDANCE = ("", "0")


# ---------------- per-sample columns ----------------

@dataclass(frozen=True)
class AbundanceColumn:
    index: int
    key: str
    label: str
    rt_key: str
    rt_label: str


class AbundanceColumnMap:
    """Sample index (0..N-1) -> table column, in input file order."""

    def __init__(self, columns: List[AbundanceColumn]):
        self._columns = list(columns)

    @classmethod
    def build(cls, raw_files: Iterable) -> "AbundanceColumnMap":
        columns = []
        for i, raw in enumerate(raw_files):
            name = Path(str(raw)).name
            columns.append(
                AbundanceColumn(
                    index=i,
                    key=f"abundance_{i + 1}",
                    label=f"Abundance {i + 1} ({name})",
                    rt_key=f"rt_{i + 1}",
                    rt_label=f"RT {i + 1} ({name}) [min]",
                )
            )
        if not columns:
            raise InputContractViolation("At least one sample is required")
        return cls(columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __iter__(self):
        return iter(self._columns)

    def column(self, index: int) -> AbundanceColumn:
        if index < 0 or index >= len(self._columns):
            raise DataJoinFailure(f"Sample index {index} out of range (0..{len(self._columns) - 1})")
        return self._columns[index]

    def empty(self) -> Dict[str, Optional[float]]:
        return {c.key: None for c in self._columns}

    def labels(self) -> Dict[str, str]:
        out = {}
        for c in self._columns:
            out[c.key] = c.label
            out[c.rt_key] = c.rt_label
        return out


# ---------------- records ----------------

@dataclass
class ConsensusRecord:
    id: int
    charge: int
    mz: float
    rt: float  # minutes, aligned
    quality: float
    sequence: str = ""
    accessions: str = ""
    descriptions: str = ""
    abundances: Dict[str, Optional[float]] = field(default_factory=dict)
    original_rts: Dict[str, Optional[float]] = field(default_factory=dict)
    psm_keys: List[str] = field(default_factory=list)

    def as_row(self) -> dict:
        row = {
            "id": self.id,
            "sequence": self.sequence,
            "accessions": self.accessions,
            "descriptions": self.descriptions,
            "charge": self.charge,
            "mz": self.mz,
            "rt": self.rt,
            "quality": self.quality,
        }
        row.update(self.abundances)
        row.update(self.original_rts)
        row["psms"] = ",".join(self.psm_keys)
        return row


@dataclass
class QuantifiedPeptide:
    id: int
    sequence: str
    accessions: str
    descriptions: str
    n_proteins: int
    charge: int
    abundances: Dict[str, Optional[float]] = field(default_factory=dict)

    def as_row(self) -> dict:
        row = {
            "id": self.id,
            "sequence": self.sequence,
            "accessions": self.accessions,
            "descriptions": self.descriptions,
            "n_proteins": self.n_proteins,
            "charge": self.charge,
        }
        row.update(self.abundances)
        return row


@dataclass
class QuantifiedProtein:
    id: int
    accessions: str
    descriptions: str
    n_proteins: int
    protein_score: Optional[float]
    n_peptides: int
    abundances: Dict[str, Optional[float]] = field(default_factory=dict)

    def as_row(self) -> dict:
        row = {
            "id": self.id,
            "accessions": self.accessions,
            "descriptions": self.descriptions,
            "n_proteins": self.n_proteins,
            "protein_score": self.protein_score,
            "n_peptides": self.n_peptides,
        }
        row.update(self.abundances)
        return row


# ---------------- representative identification ----------------

@dataclass
class Representative:
    sequence: str  # bracket notation as written in the PeptideHit
    psm: PsmRecord


def _local(element) -> str:
    return etree.QName(element).localname


def _peptide_id_reference(hit) -> str:
    # older OpenMS versions write userParam
    for up in hit:
        if _local(up) in ("UserParam", "userParam") and up.get("name") == PEPTIDE_ID_PARAM:
            return up.get("value", "")
    raise DataJoinFailure(f"PeptideHit {hit.get('sequence')} carries no {PEPTIDE_ID_PARAM}")


def select_representative(peptide_ids: Iterable, psm_index: PsmIndex) -> Tuple[Optional[Representative], List[PsmRecord]]:
    """
    Pick the target PSM with the lowest PEP among `peptide_ids`
    (PeptideIdentification elements). Decoys are never considered; on
    equal PEP the first one wins.

    Returns (representative or None, all attached target PSMs).
    """
    best = None
    targets = []
    for pep_id in peptide_ids:
        hits = [c for c in pep_id if _local(c) == "PeptideHit"]
        if not hits:
            continue
        hit = hits[0]
        reference = _peptide_id_reference(hit)
        is_decoy, _ = parse_back_reference(reference)
        if is_decoy:
            continue
        psm = psm_index.get(reference)
        targets.append(psm)
        if best is None or psm.pep < best.psm.pep:
            best = Representative(sequence=hit.get("sequence", ""), psm=psm)
    return best, targets


# ---------------- consensus features ----------------

def assemble_consensus_records(idmapped_consensus, restored: Dict[str, object],
                               columns: AbundanceColumnMap, psm_index: PsmIndex) -> List[ConsensusRecord]:
    """
    One ConsensusRecord per consensusElement of the ID-mapped consensusXML.

    `restored` is the element index returned by restore_original_rts();
    it supplies the pre-alignment RT of every sub-feature.
    """
    tree = parse_xml(idmapped_consensus)
    records = []
    next_id = 1
    for ce in tree.iter("{*}consensusElement"):
        centroid = next((c for c in ce if _local(c) == "centroid"), None)
        if centroid is None:
            raise DataJoinFailure(f"consensusElement {ce.get('id')} has no centroid")

        record = ConsensusRecord(
            id=next_id,
            charge=int(ce.get("charge", "0")),
            mz=float(centroid.get("mz")),
            rt=float(centroid.get("rt")) / 60.0,
            quality=float(ce.get("quality", "0")),
            abundances=columns.empty(),
            original_rts={c.rt_key: None for c in columns},
        )
        next_id += 1

        best, targets = select_representative(ce.iter("{*}PeptideIdentification"), psm_index)
        record.psm_keys = [p.key for p in targets]
        if best is not None:
            record.sequence = best.sequence
            record.accessions = best.psm.accessions
            record.descriptions = best.psm.descriptions

        for group in ce:
            if _local(group) != "groupedElementList":
                continue
            for element in group:
                if _local(element) != "element":
                    continue
                column = columns.column(int(element.get("map")))
                fid = element.get("id")
                original = restored.get(fid)
                if original is None:
                    raise DataJoinFailure(f"Sub-feature {fid} not found in the RT-restored consensus map")
                record.abundances[column.key] = float(element.get("it"))
                record.original_rts[column.rt_key] = float(original.get("rt")) / 60.0

        records.append(record)

    logger.info("Assembled %d consensus features", len(records))
    return records


# ---------------- ProteinQuantifier tables ----------------

def _leading_comment_lines(path) -> int:
    n = 0
    try:
        with open(path, "r") as f:
            for line in f:
                if not line.startswith("#"):
                    break
                n += 1
    except OSError as e:
        raise FileIOFailure(path, f"Could not read quantification table ({e})") from e
    return n


def parse_abundance(cell: str) -> Optional[float]:
    """'' and '0' mean not quantified, not zero."""
    cell = cell.strip()
    if cell in MISSING_ABUNDANCE:
        return None
    return float(cell)


def _as_int(cell: str) -> int:
    cell = cell.strip()
    return int(float(cell)) if cell else 0


def parse_quant_table(path, kind: str, columns: AbundanceColumnMap,
                      descriptions: Optional[Dict[str, str]] = None) -> List[object]:
    """
    Parse pq_peptides.csv (kind="peptides") or pq_proteins.csv
    (kind="proteins") written by ProteinQuantifier.
    """
    if kind not in LEADING_COLUMNS:
        raise InputContractViolation(f"Unknown quantification table kind: {kind}")
    descriptions = descriptions or {}
    skip = _leading_comment_lines(path)
    try:
        df = pd.read_csv(path, sep="\t", skiprows=skip, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError as e:
        raise FileIOFailure(path, "Quantification table has no header") from e

    n_leading = len(LEADING_COLUMNS[kind])
    n_abundances = len(df.columns) - n_leading
    if n_abundances != len(columns):
        raise DataJoinFailure(
            f"{Path(str(path)).name} has {n_abundances} abundance columns, expected {len(columns)}"
        )

    records = []
    for i, values in enumerate(df.itertuples(index=False, name=None), start=1):
        abundances = columns.empty()
        for column, cell in zip(columns, values[n_leading:]):
            abundances[column.key] = parse_abundance(cell)

        if kind == PEPTIDE_TABLE:
            accessions = values[1]
            records.append(
                QuantifiedPeptide(
                    id=i,
                    sequence=values[0],
                    accessions=accessions,
                    descriptions=describe_accessions(accessions, descriptions),
                    n_proteins=_as_int(values[2]),
                    charge=_as_int(values[3]),
                    abundances=abundances,
                )
            )
        else:
            accessions = values[0]
            score = values[2].strip()
            records.append(
                QuantifiedProtein(
                    id=i,
                    accessions=accessions,
                    descriptions=describe_accessions(accessions, descriptions),
                    n_proteins=_as_int(values[1]),
                    protein_score=float(score) if score else None,
                    n_peptides=_as_int(values[3]),
                    abundances=abundances,
                )
            )

    logger.info("Parsed %d quantified %s from %s", len(records), kind, path)
    return records
