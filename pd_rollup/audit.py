"""Audit records for filtering steps.

Every filter reports how many rows and distinct master proteins it saw before
and after it ran, so a run can be traced from raw export to final matrix.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class FilterStep:
    """Row and protein counts around a single filtering step."""

    stage: str
    step: str
    rows_before: int
    rows_after: int
    proteins_before: int | None = None
    proteins_after: int | None = None

    @property
    def rows_removed(self) -> int:
        return self.rows_before - self.rows_after

    def to_dict(self) -> dict:
        result = asdict(self)
        result['rows_removed'] = self.rows_removed
        return result

    def __str__(self) -> str:
        text = f"{self.step}: {self.rows_before} -> {self.rows_after} rows"
        if self.proteins_before is not None:
            text += f", {self.proteins_before} -> {self.proteins_after} proteins"
        return text


def _n_proteins(data: pd.DataFrame, protein_col: str | None) -> int | None:
    if protein_col is None or protein_col not in data.columns:
        return None
    return int(data[protein_col].dropna().nunique())


def record_step(
    stage: str,
    step: str,
    before: pd.DataFrame,
    after: pd.DataFrame,
    protein_col: str | None = None,
) -> FilterStep:
    """Build a FilterStep from two tables and log it."""
    entry = FilterStep(
        stage=stage,
        step=step,
        rows_before=len(before),
        rows_after=len(after),
        proteins_before=_n_proteins(before, protein_col),
        proteins_after=_n_proteins(after, protein_col),
    )
    logger.info(f"{stage}: {entry}")
    return entry


def steps_to_frame(steps: list[FilterStep]) -> pd.DataFrame:
    """Tabulate audit steps (one row per step)."""
    columns = [
        'stage', 'step', 'rows_before', 'rows_after',
        'proteins_before', 'proteins_after', 'rows_removed',
    ]
    if not steps:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([s.to_dict() for s in steps], columns=columns)
