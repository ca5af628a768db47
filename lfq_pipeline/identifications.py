"""
Peptide-spectrum matches coming from the host search and their idXML export.

OpenMS tools do not keep foreign identifiers, so every exported PeptideHit
carries a `pd_peptide_id` UserParam with "<workflow_id>;<peptide_id>",
prefixed with "decoy_" for decoy matches. The id comes back unchanged in
the IDMapper output and is used to look the PSM up again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

import pandas as pd
from lxml import etree

from .errors import DataJoinFailure, FileIOFailure, InputContractViolation
from .sequence_notation import translate

logger = logging.getLogger(__name__)

DECOY_PREFIX = "decoy_"
PEPTIDE_ID_PARAM = "pd_peptide_id"
PEP_PARAM = "posterior_error_probability"

FILTERED = "filtered"
UNFILTERED = "unfiltered"

XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
IDXML_SCHEMA = "http://open-ms.sourceforge.net/schemas/IdXML_1_2.xsd"

REQUIRED_COLUMNS = ["workflow_id", "peptide_id", "sequence", "charge", "mz", "rt"]
# optional columns and the value used when the host did not export them
OPTIONAL_COLUMNS = {
    "modifications": "",
    "pep": 1.0,
    "q_value": 1.0,
    "spectrum_file": "",
    "is_decoy": False,
    "accessions": "",
    "descriptions": "",
}


@dataclass
class PsmRecord:
    workflow_id: int
    peptide_id: int
    sequence: str
    charge: int
    mz: float
    rt: float  # minutes
    modifications: str = ""
    pep: float = 1.0
    q_value: float = 1.0
    spectrum_file: str = ""
    is_decoy: bool = False
    accessions: str = ""
    descriptions: str = ""

    @property
    def key(self) -> str:
        return f"{self.workflow_id};{self.peptide_id}"

    @property
    def back_reference(self) -> str:
        return (DECOY_PREFIX if self.is_decoy else "") + self.key

    @property
    def modified_sequence(self) -> str:
        return translate(self.sequence, self.modifications)


def parse_back_reference(value: str) -> Tuple[bool, str]:
    """Split a pd_peptide_id value into (is_decoy, "<workflow_id>;<peptide_id>")."""
    is_decoy = value.startswith(DECOY_PREFIX)
    key = value[len(DECOY_PREFIX):] if is_decoy else value
    if len(key.split(";")) < 2:
        raise DataJoinFailure(f"UserParam {PEPTIDE_ID_PARAM} has wrong format: {value!r}")
    return is_decoy, key


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "decoy")


def load_psms(path) -> List[PsmRecord]:
    """
    Read the host's tab-separated PSM export. Retention times are in minutes.
    """
    try:
        df = pd.read_csv(path, sep="\t", keep_default_na=False)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise FileIOFailure(path, f"Could not read PSM table ({e})") from e

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise InputContractViolation(f"PSM table {path} lacks column(s): {', '.join(missing)}")

    for col, default in OPTIONAL_COLUMNS.items():
        if col not in df.columns:
            df[col] = default
        else:
            df[col] = df[col].replace("", default)

    psms = []
    for row in df.itertuples(index=False):
        psms.append(
            PsmRecord(
                workflow_id=int(row.workflow_id),
                peptide_id=int(row.peptide_id),
                sequence=str(row.sequence),
                charge=int(row.charge),
                mz=float(row.mz),
                rt=float(row.rt),
                modifications=str(row.modifications),
                pep=float(row.pep),
                q_value=float(row.q_value),
                spectrum_file=str(row.spectrum_file),
                is_decoy=_as_bool(row.is_decoy),
                accessions=str(row.accessions),
                descriptions=str(row.descriptions),
            )
        )
    logger.info("Loaded %d PSMs from %s", len(psms), path)
    return psms


class PsmIndex:
    """PSMs by back reference, the value stored in the pd_peptide_id UserParam."""

    def __init__(self, psms: Iterable[PsmRecord]):
        self._by_ref: Dict[str, PsmRecord] = {p.back_reference: p for p in psms}

    def __len__(self) -> int:
        return len(self._by_ref)

    def __contains__(self, back_reference: str) -> bool:
        return back_reference in self._by_ref

    def get(self, back_reference: str) -> PsmRecord:
        try:
            return self._by_ref[back_reference]
        except KeyError:
            raise DataJoinFailure(f"No PSM with id {back_reference!r}") from None


# ---------------- idXML export ----------------

def _user_param(parent, name: str, value: str, value_type: str = "string"):
    return etree.SubElement(parent, "UserParam", type=value_type, name=name, value=value)


def _select(psms: Iterable[PsmRecord], mode: str, q_value_threshold: float,
            pep_threshold: float) -> List[PsmRecord]:
    selected = []
    for p in psms:
        if mode == FILTERED:
            if p.is_decoy or p.q_value > q_value_threshold:
                continue
        elif p.pep > pep_threshold:
            continue
        selected.append(p)
    # targets first, then decoys
    return sorted(selected, key=lambda p: p.is_decoy)


def export_idxml(psms: Iterable[PsmRecord], path, mode: str = FILTERED,
                 q_value_threshold: float = 0.01, pep_threshold: float = 1.0) -> int:
    """
    Write PSMs as idXML and return the number of PeptideIdentifications.

    filtered:   target PSMs with q-value <= q_value_threshold, scored by
                q-value (lower is better); input for IDMapper.
    unfiltered: targets and decoys with PEP <= pep_threshold, scored by
                1 - PEP (higher is better); input for protein inference.
    """
    if mode not in (FILTERED, UNFILTERED):
        raise InputContractViolation(f"Unknown idXML export mode: {mode}")

    root = etree.Element("IdXML", nsmap={"xsi": XSI_NS})
    root.set("version", "1.2")
    root.set(f"{{{XSI_NS}}}noNamespaceSchemaLocation", IDXML_SCHEMA)

    etree.SubElement(
        root, "SearchParameters",
        id="SP_0", db="fnord.fasta", db_version="", taxonomy="0",
        mass_type="monoisotopic", charges="", enzyme="unknown_enzyme",
        missed_cleavages="0", precursor_peak_tolerance="42.0", peak_mass_tolerance="42.0",
    )
    run = etree.SubElement(
        root, "IdentificationRun",
        search_engine="PD", search_engine_version="2.0",
        date="2011-11-11T11:11:11", search_parameters_ref="SP_0",
    )

    if mode == FILTERED:
        score_type, higher_better = "Percolator q-Value", "false"
    else:
        score_type, higher_better = "Posterior Probability_score", "true"

    selected = _select(psms, mode, q_value_threshold, pep_threshold)
    for p in selected:
        pep_id = etree.SubElement(
            run, "PeptideIdentification",
            score_type=score_type, higher_score_better=higher_better,
            MZ=str(p.mz), RT=str(p.rt * 60.0),
        )
        score = p.q_value if mode == FILTERED else 1.0 - p.pep
        hit = etree.SubElement(
            pep_id, "PeptideHit",
            score=str(score), sequence=p.modified_sequence, charge=str(p.charge),
        )
        _user_param(hit, PEPTIDE_ID_PARAM, p.back_reference)
        _user_param(hit, PEP_PARAM, str(p.pep), "float")

    try:
        etree.ElementTree(root).write(str(path), pretty_print=True, xml_declaration=True, encoding="UTF-8")
    except OSError as e:
        raise FileIOFailure(path, f"Could not write idXML ({e})") from e

    logger.info("Exported %d %s PSMs to %s", len(selected), mode, path)
    return len(selected)
