"""
Column normalization for log-scale quantification matrices.

Median centering removes per-sample offsets by an additive shift:

    shift_j = target - median_j

where ``median_j`` is the median of sample j over all rows (global) or over
a reference subset of rows, and ``target`` is the median of the column
medians unless an explicit center is given. The shift is applied to every
row and returned, so the transform can be undone exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .errors import InputFormatError, IntegrityError
from .matrix import QuantMatrix, log2_transform

logger = logging.getLogger(__name__)

STAGE = 'normalize'

NORMALIZATION_METHODS = ('median', 'reference', 'none')


@dataclass
class NormalizationConfig:
    """Options for :func:`normalize`."""

    method: str = 'median'
    log2: bool = True
    center: float | None = None
    # Reference subset, as row keys or by matching a feature metadata column
    reference_rows: list = field(default_factory=list)
    reference_col: str | None = None
    reference_values: list = field(default_factory=list)


@dataclass
class NormalizationResult:
    """Normalized matrix and the per-sample shifts that were added."""

    matrix: QuantMatrix
    shifts: pd.Series
    target: float


def column_medians(exprs: pd.DataFrame) -> pd.Series:
    """Median of each column over non-missing values."""
    return exprs.median(axis=0, skipna=True)


def center_normalize(
    qm: QuantMatrix,
    reference_rows: list | None = None,
    center: float | None = None,
) -> NormalizationResult:
    """Median-center the columns of a log-scale matrix.

    Args:
        qm: Matrix of log-scale values
        reference_rows: Row keys whose medians define the shifts; all rows
            when None
        center: Value to center column medians on. The median of the column
            medians when None.

    Returns:
        NormalizationResult with the shifted matrix and per-sample shifts

    Raises:
        IntegrityError: If reference rows are not in the matrix
        InputFormatError: If the reference subset is empty or has no values
            for a sample that has values

    """
    exprs = qm.exprs

    if reference_rows is None:
        basis = exprs
        label = 'all rows'
    else:
        reference_rows = list(reference_rows)
        if not reference_rows:
            raise InputFormatError("Reference row subset is empty", stage=STAGE)
        unknown = [r for r in reference_rows if r not in exprs.index]
        if unknown:
            raise IntegrityError(
                f"{len(unknown)} reference rows not in matrix: {unknown[:5]}", stage=STAGE
            )
        basis = exprs.loc[reference_rows]
        label = f"{len(reference_rows)} reference rows"

    medians = column_medians(basis)
    uncovered = medians.index[medians.isna() & exprs.notna().any(axis=0)]
    if len(uncovered):
        raise InputFormatError(
            f"Reference rows have no values in samples: {list(uncovered)[:5]}", stage=STAGE
        )

    target = float(center) if center is not None else float(medians.median(skipna=True))
    shifts = (target - medians).fillna(0.0)
    shifts.name = 'shift'

    normalized = exprs + shifts
    logger.info(
        f"Median-centered {exprs.shape[1]} samples on {label} "
        f"(target {target:.3f}, shifts {shifts.min():+.3f} to {shifts.max():+.3f})"
    )

    return NormalizationResult(matrix=qm.with_exprs(normalized), shifts=shifts, target=target)


def remove_shifts(exprs: pd.DataFrame, shifts: pd.Series) -> pd.DataFrame:
    """Undo :func:`center_normalize` given its reported shifts."""
    missing = [s for s in exprs.columns if s not in shifts.index]
    if missing:
        raise IntegrityError(f"No shift recorded for samples: {missing[:5]}", stage=STAGE)
    return exprs - shifts[exprs.columns]


def reference_rows_from_metadata(qm: QuantMatrix, column: str, values: list) -> list:
    """Row keys whose feature metadata ``column`` takes one of ``values``."""
    if column not in qm.feature_data.columns:
        raise InputFormatError(f"Reference column '{column}' not in feature metadata", stage=STAGE)
    mask = qm.feature_data[column].isin(values)
    return qm.feature_data.index[mask].tolist()


def normalize(qm: QuantMatrix, config: NormalizationConfig) -> NormalizationResult:
    """Optionally log2-transform, then center columns per ``config.method``.

    Methods:
    - 'median': global median centering
    - 'reference': centering on a reference subset of rows, applied to all
    - 'none': no centering (shifts are zero)
    """
    if config.method not in NORMALIZATION_METHODS:
        raise InputFormatError(
            f"Unknown normalization method: {config.method}. "
            f"Expected one of {NORMALIZATION_METHODS}",
            stage=STAGE,
        )

    if config.log2:
        qm = log2_transform(qm)

    if config.method == 'none':
        shifts = pd.Series(0.0, index=qm.exprs.columns, name='shift')
        return NormalizationResult(matrix=qm, shifts=shifts, target=np.nan)

    if config.method == 'median':
        return center_normalize(qm, center=config.center)

    reference_rows = list(config.reference_rows)
    if config.reference_col is not None:
        reference_rows += reference_rows_from_metadata(
            qm, config.reference_col, config.reference_values
        )
    reference_rows = list(dict.fromkeys(reference_rows))
    return center_normalize(qm, reference_rows=reference_rows, center=config.center)
