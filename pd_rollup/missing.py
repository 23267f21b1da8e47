"""Missing-value filtering.

Two filters interact:

(a) drop rows whose proportion of missing values exceeds a threshold
(b) within each group (protein), blank the samples where fewer than
    ``min_features`` rows have a value

Blanking in (b) can push rows back over the threshold of (a), so the two are
alternated until the matrix stops changing, with a bounded number of passes.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import pandas as pd

from .audit import FilterStep
from .errors import ConvergenceWarning, InputFormatError, IntegrityError
from .matrix import QuantMatrix

logger = logging.getLogger(__name__)

STAGE = 'missing'


@dataclass
class MissingValueConfig:
    """Options for :func:`filter_missing_fixed_point`."""

    max_missing: float = 0.5
    min_features: int | None = None
    group_col: str = 'Master Protein Accessions'
    max_iterations: int = 5


@dataclass
class MissingFilterResult:
    """Filtered matrix plus convergence information."""

    matrix: QuantMatrix
    n_iterations: int
    converged: bool
    steps: list[FilterStep] = field(default_factory=list)


def _matrix_step(step: str, before: QuantMatrix, after: QuantMatrix, group_col: str | None) -> FilterStep:
    def n_groups(qm):
        if group_col is None or group_col not in qm.feature_data.columns:
            return None
        return int(qm.feature_data[group_col].nunique())

    entry = FilterStep(
        stage=STAGE,
        step=step,
        rows_before=before.n_features,
        rows_after=after.n_features,
        proteins_before=n_groups(before),
        proteins_after=n_groups(after),
    )
    logger.debug(f"{STAGE}: {entry}")
    return entry


def filter_missing(qm: QuantMatrix, max_missing: float) -> QuantMatrix:
    """Drop rows whose missing proportion is greater than ``max_missing``.

    With 8 samples and ``max_missing=0.5`` a row with 4 missing values is
    kept and a row with 5 is dropped.
    """
    if not 0 <= max_missing <= 1:
        raise InputFormatError(
            f"max_missing must be a proportion between 0 and 1, got {max_missing}",
            stage=STAGE,
        )
    keep = qm.missing_fraction() <= max_missing
    return qm.subset(qm.exprs.index[keep.values])


def restrict_features_per_group(
    qm: QuantMatrix,
    group_col: str,
    min_features: int,
) -> QuantMatrix:
    """Blank group/sample cells supported by fewer than ``min_features`` rows.

    For every group and sample, if fewer than ``min_features`` rows of the
    group have a value in that sample, the group's values in that sample are
    set to missing. Rows are kept even when left with no values; dropping
    them is the job of :func:`filter_missing`.

    Raises:
        InputFormatError: If ``group_col`` is not in the feature metadata
        IntegrityError: If a row has no group key

    """
    if group_col not in qm.feature_data.columns:
        raise InputFormatError(f"Group column '{group_col}' not in feature metadata", stage=STAGE)
    groups = qm.feature_data[group_col]
    if groups.isna().any():
        raise IntegrityError(
            f"{int(groups.isna().sum())} rows have no '{group_col}' value, e.g. "
            f"{groups.index[groups.isna()][:3].tolist()}",
            stage=STAGE,
        )

    support = qm.exprs.notna().astype(int).groupby(groups.values).transform('sum')
    support.index = qm.exprs.index
    exprs = qm.exprs.mask(support < min_features)
    return qm.with_exprs(exprs)


def filter_missing_fixed_point(qm: QuantMatrix, config: MissingValueConfig) -> MissingFilterResult:
    """Alternate the missingness and group-support filters until stable.

    Returns:
        MissingFilterResult. ``converged`` is False when the matrix was still
        changing after ``config.max_iterations`` passes; the last matrix is
        returned and a ConvergenceWarning is issued.

    """
    group_col = config.group_col
    steps = []

    current = filter_missing(qm, config.max_missing)
    steps.append(_matrix_step(f'missing <= {config.max_missing}', qm, current, group_col))

    if not config.min_features or config.min_features <= 1:
        logger.info(f"Missing-value filter: {qm.n_features} -> {current.n_features} rows")
        return MissingFilterResult(matrix=current, n_iterations=1, converged=True, steps=steps)

    converged = False
    n_iterations = 0
    for n_iterations in range(1, config.max_iterations + 1):
        restricted = restrict_features_per_group(current, group_col, config.min_features)
        steps.append(_matrix_step(
            f'pass {n_iterations}: >= {config.min_features} features per group',
            current, restricted, group_col,
        ))
        filtered = filter_missing(restricted, config.max_missing)
        steps.append(_matrix_step(
            f'pass {n_iterations}: missing <= {config.max_missing}',
            restricted, filtered, group_col,
        ))

        unchanged = (
            filtered.exprs.index.equals(current.exprs.index)
            and filtered.exprs.equals(current.exprs)
        )
        current = filtered
        if unchanged:
            converged = True
            break

    if not converged:
        message = (
            f"Missing-value filter still changing after {config.max_iterations} passes; "
            f"returning the last result"
        )
        logger.warning(message)
        warnings.warn(message, ConvergenceWarning, stacklevel=2)

    logger.info(
        f"Missing-value filter: {qm.n_features} -> {current.n_features} rows "
        f"in {n_iterations} passes"
    )
    return MissingFilterResult(
        matrix=current, n_iterations=n_iterations, converged=converged, steps=steps
    )
