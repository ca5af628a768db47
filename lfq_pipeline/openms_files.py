"""
Small readers/writers for the OpenMS XML files and FASTA databases that the
pipeline touches directly (everything else is handled by the TOPP tools).
"""
from __future__ import annotations

import os
import shutil
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from Bio import SeqIO
from lxml import etree

from .errors import DataJoinFailure, FileIOFailure
from .utils import remove_quietly

logger = logging.getLogger(__name__)

OBSOLETE_CV_TERMS = ("MS:1000498",)
FEATURE_ID_PREFIX = "f_"


def parse_xml(path):
    parser = etree.XMLParser(remove_blank_text=True, huge_tree=True)
    try:
        return etree.parse(str(path), parser)
    except (OSError, etree.XMLSyntaxError) as e:
        raise FileIOFailure(path, f"Could not read XML file ({e})") from e


def write_xml(tree, path) -> None:
    try:
        tree.write(str(path), pretty_print=True, xml_declaration=True, encoding="UTF-8")
    except OSError as e:
        raise FileIOFailure(path, f"Could not write XML file ({e})") from e


def _local(element) -> str:
    return etree.QName(element).localname


# ---------------- featureXML / consensusXML ----------------

def read_feature_rts(featurexml) -> Dict[str, float]:
    """
    {feature id: RT in seconds} for the top level features of a featureXML.
    Ids are returned without the "f_" prefix so they match the element ids
    of a consensusXML.
    """
    rts = {}
    tree = parse_xml(featurexml)
    for feature in tree.iter("{*}feature"):
        parent = feature.getparent()
        if parent is None or _local(parent) != "featureList":
            continue
        fid = feature.get("id", "")
        if fid.startswith(FEATURE_ID_PREFIX):
            fid = fid[len(FEATURE_ID_PREFIX):]
        positions = [c for c in feature if _local(c) == "position"]
        if not positions:
            raise DataJoinFailure(f"Feature {fid} in {featurexml} has no position")
        rts[fid] = float(positions[0].text)
    return rts


def consensus_elements(tree) -> Dict[str, object]:
    """{sub-feature id: <element>} over all groupedElementLists of a consensusXML."""
    index = {}
    for element in tree.iter("{*}element"):
        parent = element.getparent()
        if parent is not None and _local(parent) == "groupedElementList":
            index[element.get("id")] = element
    return index


def restore_original_rts(consensus_in, feature_files: Iterable, consensus_out) -> Dict[str, object]:
    """
    Overwrite the RT of every sub-feature in `consensus_in` with the value
    from the per-sample featureXML it came from, i.e. undo map alignment,
    and save the result as `consensus_out`.

    Returns the element index of the restored document.
    """
    tree = parse_xml(consensus_in)
    index = consensus_elements(tree)

    for featurexml in feature_files:
        for fid, rt in read_feature_rts(featurexml).items():
            element = index.get(fid)
            if element is None:
                raise DataJoinFailure(f"Feature {fid} of {featurexml} not found in {consensus_in}")
            element.set("rt", str(rt))

    write_xml(tree, consensus_out)
    logger.info("Wrote consensus map with original RTs to %s", consensus_out)
    return index


# ---------------- mzML ----------------

def strip_obsolete_cv_terms(mzml_files: Iterable, accessions=OBSOLETE_CV_TERMS) -> int:
    """
    Remove cvParams that make OpenMS emit millions of warnings (MS:1000498)
    from each mzML in place. Returns the number of removed cvParams.
    """
    removed = 0
    for f in mzml_files:
        f = str(f)
        root, ext = os.path.splitext(f)
        tmp = f"{root}_tmp{ext}"
        try:
            shutil.move(f, tmp)
        except OSError as e:
            raise FileIOFailure(f, f"Could not move file to {tmp} ({e})") from e

        tree = parse_xml(tmp)
        drop = [
            el for el in tree.iter("{*}cvParam")
            if el.get("accession") in accessions
        ]
        for el in drop:
            el.getparent().remove(el)
        write_xml(tree, f)
        removed += len(drop)
        logger.debug("Removed %d obsolete cvParams from %s", len(drop), f)

        remove_quietly(tmp)
    return removed


# ---------------- FASTA ----------------

def deduplicate_fasta(src, dst: Optional[str] = None) -> int:
    """
    Keep only the first record per accession. Writes in place when `dst`
    is not given. Returns the number of records kept.
    """
    dst = dst or src
    seen = set()
    records = []
    try:
        for rec in SeqIO.parse(str(src), "fasta"):
            if rec.id in seen:
                continue
            seen.add(rec.id)
            records.append(rec)
        SeqIO.write(records, str(dst), "fasta")
    except OSError as e:
        raise FileIOFailure(src, f"Could not rewrite FASTA ({e})") from e

    logger.info("FASTA %s: kept %d unique accessions", Path(src).name, len(records))
    return len(records)


def fasta_descriptions(fasta) -> Dict[str, str]:
    """
    {accession: description}. Headers without a description are skipped;
    an unreadable file gives an empty mapping.
    """
    result = {}
    try:
        for rec in SeqIO.parse(str(fasta), "fasta"):
            desc = rec.description[len(rec.id):].strip()
            if desc:
                result[rec.id] = desc
    except (OSError, ValueError):
        logger.error("Could not parse FASTA file '%s'", fasta)
    return result


def describe_accessions(accessions: str, descriptions: Dict[str, str]) -> str:
    """'P1/P2' -> 'desc1 /// desc2', skipping accessions without a description."""
    parts: List[str] = [descriptions[a] for a in accessions.split("/") if a in descriptions]
    return " /// ".join(parts)
