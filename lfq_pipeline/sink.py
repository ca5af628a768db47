"""
Where finished quantification tables go.
"""
from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import pandas as pd

from .consensus import AbundanceColumnMap, ConsensusRecord, QuantifiedPeptide, QuantifiedProtein
from .errors import FileIOFailure
from .utils import ensure_dir, remove_quietly

logger = logging.getLogger(__name__)

FEATURES_FILE = "quantified_features.tsv"
PEPTIDES_FILE = "quantified_peptides.tsv"
PROTEINS_FILE = "quantified_proteins.tsv"


@dataclass
class QuantificationResult:
    columns: AbundanceColumnMap
    features: List[ConsensusRecord] = field(default_factory=list)
    peptides: List[QuantifiedPeptide] = field(default_factory=list)
    proteins: List[QuantifiedProtein] = field(default_factory=list)

    def feature_header(self) -> List[str]:
        return (
            ["id", "sequence", "accessions", "descriptions", "charge", "mz", "rt", "quality"]
            + [c.key for c in self.columns]
            + [c.rt_key for c in self.columns]
            + ["psms"]
        )

    def peptide_header(self) -> List[str]:
        return (
            ["id", "sequence", "accessions", "descriptions", "n_proteins", "charge"]
            + [c.key for c in self.columns]
        )

    def protein_header(self) -> List[str]:
        return (
            ["id", "accessions", "descriptions", "n_proteins", "protein_score", "n_peptides"]
            + [c.key for c in self.columns]
        )


class QuantificationSink:
    """Receives the complete result of a run, exactly once."""

    def publish(self, result: QuantificationResult) -> None:
        raise NotImplementedError


class TsvSink(QuantificationSink):
    """
    Writes the three tables as TSV into `output_dir`. Tables are written
    under temporary names first and only renamed once all three exist.
    """

    def __init__(self, output_dir):
        self.output_dir = Path(output_dir)

    def _frame(self, records, header, result: QuantificationResult) -> pd.DataFrame:
        df = pd.DataFrame([r.as_row() for r in records], columns=header)
        return df.rename(columns=result.columns.labels())

    def publish(self, result: QuantificationResult) -> None:
        ensure_dir(self.output_dir)
        tables = [
            (FEATURES_FILE, self._frame(result.features, result.feature_header(), result)),
            (PEPTIDES_FILE, self._frame(result.peptides, result.peptide_header(), result)),
            (PROTEINS_FILE, self._frame(result.proteins, result.protein_header(), result)),
        ]

        staged = []
        try:
            for name, df in tables:
                tmp = self.output_dir / f".{name}.part"
                staged.append((tmp, self.output_dir / name))
                df.to_csv(tmp, sep="\t", index=False)
            for tmp, final in staged:
                os.replace(tmp, final)
        except OSError as e:
            for tmp, _ in staged:
                remove_quietly(tmp)
            raise FileIOFailure(self.output_dir, f"Could not write quantification tables ({e})") from e

        logger.info(
            "Published %d features, %d peptides, %d proteins to %s",
            len(result.features), len(result.peptides), len(result.proteins), self.output_dir,
        )
