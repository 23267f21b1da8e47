"""
Feature to protein (or protein+site) aggregation.

Supports:
- sum: sum of non-missing values (linear intensities)
- median: median of non-missing values
- robust: Huber M-estimation of an additive feature + sample model, fitted
  by iteratively reweighted least squares (log-scale values)

Each output row carries how many features formed the group and how many
non-missing values supported it, for downstream variance weighting.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy.stats import median_abs_deviation

from .errors import ConvergenceWarning, InputFormatError, IntegrityError
from .matrix import QuantMatrix

logger = logging.getLogger(__name__)

STAGE = 'aggregate'

# Huber tuning constant (95% efficiency under normal errors)
HUBER_K = 1.345


@dataclass
class RobustSummaryResult:
    """
    Result of robust summarisation of one group.

    The model fitted on non-missing cells is:
        y_ij = β_j + γ_i + ε_ij

    with β_j the sample effects (returned as abundances) and γ_i the feature
    effects, taking the first feature as baseline. Outlying cells are
    down-weighted with Huber weights.
    """
    abundances: pd.Series             # Per-sample estimate (NaN if no data)
    n_iterations: int
    converged: bool
    fallback: bool = False            # Model not identifiable; column means used
    weights: Optional[pd.DataFrame] = None  # Final Huber weights (for diagnostics)


@dataclass
class AggregationResult:
    """Result of aggregating a QuantMatrix by group key."""
    matrix: QuantMatrix               # One row per group
    support: pd.DataFrame             # Non-missing feature count per group and sample
    converged: pd.Series              # Per-group convergence flag (robust method)

    @property
    def n_not_converged(self) -> int:
        return int((~self.converged).sum())


# ============================================================================
# Per-group summaries
# ============================================================================

def rollup_sum(matrix: pd.DataFrame) -> pd.Series:
    """
    Rollup by summing feature abundances.

    Note: Works with linear values, not log2! Samples with no values
    give NaN, not zero.

    Args:
        matrix: Feature × sample matrix (linear intensities)

    Returns:
        Series of group abundances per sample
    """
    return matrix.sum(axis=0, skipna=True, min_count=1)


def rollup_median(matrix: pd.DataFrame) -> pd.Series:
    """
    Rollup by the median of non-missing feature values per sample.

    Args:
        matrix: Feature × sample matrix

    Returns:
        Series of group abundances per sample
    """
    return matrix.median(axis=0, skipna=True)


def _mean_fallback(values: np.ndarray, samples: pd.Index) -> RobustSummaryResult:
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=RuntimeWarning)
        means = np.nanmean(values, axis=0)
    return RobustSummaryResult(
        abundances=pd.Series(means, index=samples),
        n_iterations=0, converged=True, fallback=True,
    )


def robust_summary(
    matrix: pd.DataFrame,
    max_iter: int = 1000,
    tol: float = 1e-6,
    k: float = HUBER_K,
) -> RobustSummaryResult:
    """
    Robust summarisation of a feature × sample matrix.

    Fits y_ij = β_j + γ_i by Huber M-estimation (IRLS) on the non-missing
    cells, so features missing in some samples still contribute and
    outlying features are down-weighted.

    Degenerate cases:
        - one feature: that feature's values are returned unchanged
        - no more observations than parameters, or features observed in
          disconnected blocks of samples: per-sample mean of the
          non-missing values (``fallback=True``)

    Args:
        matrix: DataFrame with features as rows, samples as columns.
                Values should be log2 transformed.
        max_iter: Maximum IRLS iterations
        tol: Convergence tolerance on the relative change in residuals
        k: Huber tuning constant (in units of robust residual scale)

    Returns:
        RobustSummaryResult with per-sample abundances
    """
    samples = matrix.columns
    values = matrix.to_numpy(dtype=float)
    n_rows, n_cols = values.shape

    if n_rows == 0:
        return RobustSummaryResult(
            abundances=pd.Series(np.nan, index=samples),
            n_iterations=0, converged=True, fallback=True,
        )

    if n_rows == 1:
        return RobustSummaryResult(
            abundances=pd.Series(values[0], index=samples),
            n_iterations=0, converged=True,
        )

    observed = ~np.isnan(values)
    row_idx, col_idx = np.nonzero(observed)
    y = values[row_idx, col_idx]

    observed_cols = observed.any(axis=0)
    used_rows = np.unique(row_idx)
    n_samples = int(observed_cols.sum())
    n_features = len(used_rows)
    n_params = n_samples + n_features - 1

    if len(y) == 0 or len(y) <= n_params:
        return _mean_fallback(values, samples)

    # Design matrix: sample indicators, then feature indicators (first feature dropped)
    col_param = np.cumsum(observed_cols) - 1
    row_param = np.searchsorted(used_rows, row_idx)
    obs = np.arange(len(y))
    X = np.zeros((len(y), n_params))
    X[obs, col_param[col_idx]] = 1.0
    has_feature_term = row_param > 0
    X[obs[has_feature_term], n_samples + row_param[has_feature_term] - 1] = 1.0

    if np.linalg.matrix_rank(X) < n_params:
        # Features observed in disjoint sets of samples: sample effects are
        # not comparable across the blocks
        logger.debug("Robust summary design is rank deficient; using per-sample means")
        return _mean_fallback(values, samples)

    beta = np.linalg.lstsq(X, y, rcond=None)[0]
    resid = y - X @ beta
    weights = np.ones_like(y)
    converged = False
    iteration = 0

    for iteration in range(1, max_iter + 1):
        scale = median_abs_deviation(resid, scale='normal')
        if not np.isfinite(scale) or scale < 1e-12:
            # Perfect additive fit: nothing left to down-weight
            converged = True
            break

        abs_u = np.abs(resid / scale)
        weights = np.where(abs_u <= k, 1.0, k / np.maximum(abs_u, 1e-12))

        sqrt_w = np.sqrt(weights)
        beta = np.linalg.lstsq(X * sqrt_w[:, np.newaxis], y * sqrt_w, rcond=None)[0]
        new_resid = y - X @ beta

        change = np.sqrt(np.sum(np.square(new_resid - resid)) / max(np.sum(np.square(resid)), 1e-12))
        resid = new_resid
        if change < tol:
            converged = True
            break

    abundances = np.full(n_cols, np.nan)
    abundances[observed_cols] = beta[:n_samples]

    weight_matrix = np.full(values.shape, np.nan)
    weight_matrix[row_idx, col_idx] = weights

    if not converged:
        logger.debug(f"Robust summary did not converge after {max_iter} iterations")

    return RobustSummaryResult(
        abundances=pd.Series(abundances, index=samples),
        n_iterations=iteration,
        converged=converged,
        weights=pd.DataFrame(weight_matrix, index=matrix.index, columns=samples),
    )


AGGREGATION_METHODS = ('sum', 'median', 'robust')


# ============================================================================
# Matrix-level aggregation
# ============================================================================

def aggregate(
    qm: QuantMatrix,
    group_col: str = 'Master Protein Accessions',
    method: str = 'robust',
    max_iter: int = 1000,
    tol: float = 1e-6,
    keep_columns: Optional[List[str]] = None,
) -> AggregationResult:
    """
    Collapse feature rows sharing a group key into one row per group.

    Args:
        qm: Feature-level QuantMatrix
        group_col: Feature metadata column holding the group key
            (master protein accession, or the protein+site key)
        method: 'sum', 'median' or 'robust'
        max_iter: Iteration cap for the robust fit
        tol: Convergence tolerance for the robust fit
        keep_columns: Feature metadata columns to carry over (first value
            per group)

    Returns:
        AggregationResult. The output matrix's feature data holds the group
        key, ``n_features``, ``n_support`` (non-missing values across samples)
        and ``converged``.

    Raises:
        InputFormatError: Unknown method, or group/keep columns missing
        IntegrityError: Rows without a group key
    """
    if method not in AGGREGATION_METHODS:
        raise InputFormatError(
            f"Unknown aggregation method: {method}. Expected one of {AGGREGATION_METHODS}",
            stage=STAGE,
        )
    if group_col not in qm.feature_data.columns:
        raise InputFormatError(f"Group column '{group_col}' not in feature metadata", stage=STAGE)
    keep_columns = [c for c in (keep_columns or []) if c != group_col]
    absent = [c for c in keep_columns if c not in qm.feature_data.columns]
    if absent:
        raise InputFormatError(f"Columns to keep not in feature metadata: {absent}", stage=STAGE)

    groups = qm.feature_data[group_col]
    if groups.isna().any():
        raise IntegrityError(
            f"{int(groups.isna().sum())} rows have no '{group_col}' value",
            stage=STAGE,
        )

    logger.info(f"Aggregating {qm.n_features} features by '{group_col}' using {method}")

    grouped = qm.exprs.groupby(groups.values, sort=True)
    converged: Dict[str, bool] = {}

    if method == 'sum':
        exprs = grouped.sum(min_count=1)
    elif method == 'median':
        exprs = grouped.median()
    else:
        rows = {}
        for key, matrix in grouped:
            result = robust_summary(matrix, max_iter=max_iter, tol=tol)
            rows[key] = result.abundances
            converged[key] = result.converged
        exprs = pd.DataFrame(rows, index=qm.exprs.columns).T
        exprs = exprs.reindex(sorted(rows))

    exprs = exprs[qm.samples].astype(float)
    exprs.index.name = 'group_id'

    support = qm.exprs.notna().groupby(groups.values, sort=True).sum().astype(int)
    support = support.reindex(exprs.index)
    support.index.name = 'group_id'

    converged_flags = pd.Series(
        [converged.get(key, True) for key in exprs.index], index=exprs.index,
        name='converged', dtype=bool,
    )

    feature_data = pd.DataFrame(index=exprs.index)
    feature_data[group_col] = exprs.index
    feature_data['n_features'] = groups.groupby(groups.values).size().reindex(exprs.index).astype(int)
    feature_data['n_support'] = support.sum(axis=1).astype(int)
    feature_data['converged'] = converged_flags
    if keep_columns:
        first = qm.feature_data[keep_columns].groupby(groups.values, sort=True).first()
        feature_data = feature_data.join(first.reindex(exprs.index))

    n_bad = int((~converged_flags).sum())
    if n_bad:
        message = (
            f"Robust aggregation did not converge for {n_bad} of {len(exprs)} groups "
            f"within {max_iter} iterations; best estimates kept and flagged"
        )
        logger.warning(message)
        warnings.warn(message, ConvergenceWarning, stacklevel=2)

    logger.info(f"Aggregated to {len(exprs)} groups")

    return AggregationResult(
        matrix=QuantMatrix(exprs=exprs, feature_data=feature_data, sample_data=qm.sample_data.copy()),
        support=support,
        converged=converged_flags,
    )
