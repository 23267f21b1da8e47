"""Quality filtering on per-feature QC metrics.

Thresholds are independent; ``None`` disables a criterion. A threshold set
on a metric whose column is missing from the table is a configuration error,
never a silent skip.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .audit import FilterStep, record_step
from .errors import ThresholdConfigError

logger = logging.getLogger(__name__)

STAGE = 'quality'

# Quan Info values that still carry usable quantification
QUAN_INFO_KEEP = {'', 'unique'}

_COLON_SCORE = re.compile(r':\s*(\d+(?:\.\d+)?)')
_PAREN_SCORE = re.compile(r'\((\d+(?:\.\d+)?)\)')


@dataclass
class QualityFilterConfig:
    """Thresholds for :func:`filter_quality`."""

    min_signal_noise: float | None = None
    max_interference: float | None = None
    min_delta_score: float | None = None
    min_localisation_score: float | None = None
    drop_unquantified: bool = False

    signal_noise_col: str = 'Average Reporter S/N'
    interference_col: str = 'Isolation Interference [%]'
    delta_score_col: str = 'Delta Score'
    localisation_col: str = 'ptmRS: Best Site Probabilities'
    quan_info_col: str = 'Quan Info'
    protein_col: str = 'Master Protein Accessions'

    @classmethod
    def for_tmt(cls, **overrides) -> QualityFilterConfig:
        """Thresholds commonly used for TMT PSMs (S:N >= 10, interference <= 50%)."""
        params = {'min_signal_noise': 10.0, 'max_interference': 50.0}
        params.update(overrides)
        return cls(**params)


@dataclass
class QualityResult:
    """Filtered table plus audit steps."""

    data: pd.DataFrame
    steps: list[FilterStep] = field(default_factory=list)


def best_site_probability(value) -> float:
    """Reduce a ptmRS best-site-probabilities entry to one score.

    ``S5(Phospho): 99.2; T7(Phospho): 87.1`` gives 87.1 (the least confident
    site). Older ``S5(99.2)`` strings are also read. Entries without a score
    (``Too many isoforms``, blanks) give NaN.
    """
    if value is None:
        return np.nan
    if isinstance(value, (int, float, np.number)):
        return float(value)
    text = str(value).strip()
    if not text:
        return np.nan
    try:
        return float(text)
    except ValueError:
        pass
    scores = _COLON_SCORE.findall(text) or _PAREN_SCORE.findall(text)
    if not scores:
        return np.nan
    return min(float(s) for s in scores)


def _required_columns(config: QualityFilterConfig) -> dict[str, str]:
    required = {}
    if config.min_signal_noise is not None:
        required['min_signal_noise'] = config.signal_noise_col
    if config.max_interference is not None:
        required['max_interference'] = config.interference_col
    if config.min_delta_score is not None:
        required['min_delta_score'] = config.delta_score_col
    if config.min_localisation_score is not None:
        required['min_localisation_score'] = config.localisation_col
    if config.drop_unquantified:
        required['drop_unquantified'] = config.quan_info_col
    return required


def filter_quan_info(data: pd.DataFrame, quan_info_col: str = 'Quan Info') -> pd.DataFrame:
    """Drop features PD marked as not quantified (NoQuanValues, Excluded by Method, ...)."""
    if quan_info_col not in data.columns:
        raise ThresholdConfigError(f"Column '{quan_info_col}' not found", stage=STAGE)
    info = data[quan_info_col].fillna('').astype(str).str.strip().str.lower()
    return data.loc[info.isin(QUAN_INFO_KEEP)]


def filter_quality(data: pd.DataFrame, config: QualityFilterConfig) -> QualityResult:
    """Keep rows passing every enabled QC threshold.

    A row is kept when signal:noise >= ``min_signal_noise``, interference <=
    ``max_interference``, delta score >= ``min_delta_score`` and PTM
    localisation score >= ``min_localisation_score``. Missing metric values
    fail the criterion.

    Raises:
        ThresholdConfigError: If an enabled threshold's column is missing

    """
    required = _required_columns(config)
    missing = {name: col for name, col in required.items() if col not in data.columns}
    if missing:
        details = ', '.join(f"{name} needs '{col}'" for name, col in missing.items())
        raise ThresholdConfigError(f"Filter metrics absent from input: {details}", stage=STAGE)

    protein_col = config.protein_col
    steps = []
    current = data.copy()

    if config.drop_unquantified:
        before = current
        current = filter_quan_info(current, config.quan_info_col)
        steps.append(record_step(STAGE, 'unquantified', before, current, protein_col))

    if config.min_signal_noise is not None:
        before = current
        sn = pd.to_numeric(current[config.signal_noise_col], errors='coerce')
        current = current.loc[sn >= config.min_signal_noise]
        steps.append(record_step(
            STAGE, f'signal:noise >= {config.min_signal_noise}', before, current, protein_col
        ))

    if config.max_interference is not None:
        before = current
        interference = pd.to_numeric(current[config.interference_col], errors='coerce')
        current = current.loc[interference <= config.max_interference]
        steps.append(record_step(
            STAGE, f'interference <= {config.max_interference}', before, current, protein_col
        ))

    if config.min_delta_score is not None:
        before = current
        delta = pd.to_numeric(current[config.delta_score_col], errors='coerce')
        current = current.loc[delta >= config.min_delta_score]
        steps.append(record_step(
            STAGE, f'delta score >= {config.min_delta_score}', before, current, protein_col
        ))

    if config.min_localisation_score is not None:
        before = current
        scores = current[config.localisation_col].map(best_site_probability).astype(float)
        current = current.loc[scores >= config.min_localisation_score].copy()
        current['ptm_localisation_score'] = scores.loc[current.index]
        steps.append(record_step(
            STAGE, f'localisation score >= {config.min_localisation_score}',
            before, current, protein_col
        ))

    if not steps:
        logger.info("No quality thresholds configured; table passed through unchanged")

    return QualityResult(data=current, steps=steps)
