"""Feature to protein pipeline.

Runs the stages strictly in order, each one a pure transform of the previous
stage's output:

1. parse        contaminants, master protein resolution
2. quality      signal:noise, interference, delta score, PTM localisation
3. matrix       feature table -> QuantMatrix (+ site keys for site-level runs)
4. missing      missingness / group-support fixed point
5. aggregate    sum, median or robust summarisation per group
6. normalize    log2 and median centering

A structural error in any stage aborts the run and is re-raised with the
stage name attached. Any other exception escaping a stage is wrapped in a
``PipelineError`` naming the stage, with the original as its cause.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Callable

import pandas as pd

from .audit import FilterStep, record_step
from .errors import PipelineError
from .matrix import QuantMatrix, build_quant_matrix, log2_transform
from .missing import MissingFilterResult, MissingValueConfig, filter_missing_fixed_point
from .normalization import NormalizationConfig, NormalizationResult, normalize
from .parsing import ParserConfig, parse_features
from .quality import QualityFilterConfig, filter_quality
from .rollup import AggregationResult, aggregate
from .sites import add_site_key

logger = logging.getLogger(__name__)

GROUP_LEVELS = ('protein', 'site')


@dataclass
class MatrixConfig:
    """Options for building the feature-level matrix."""

    feature_key: str | None = None
    zero_as_missing: bool = True


@dataclass
class AggregationConfig:
    """Options for the aggregation stage."""

    method: str = 'robust'
    group_by: str = 'protein'
    modification: str = 'Phospho'
    max_iter: int = 1000
    tol: float = 1e-6
    keep_columns: list[str] = field(default_factory=list)
    # Log2-transform before aggregating; defaults to True for 'robust'
    log2_first: bool | None = None

    @property
    def log_before_aggregation(self) -> bool:
        if self.log2_first is None:
            return self.method == 'robust'
        return self.log2_first


@dataclass
class PipelineConfig:
    """Explicit configuration for every stage."""

    parse: ParserConfig = field(default_factory=ParserConfig)
    quality: QualityFilterConfig = field(default_factory=QualityFilterConfig)
    matrix: MatrixConfig = field(default_factory=MatrixConfig)
    missing: MissingValueConfig = field(default_factory=MissingValueConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)

    # Config section name -> (attribute, dataclass)
    SECTIONS = {
        'parse': ('parse', ParserConfig),
        'quality_filter': ('quality', QualityFilterConfig),
        'matrix': ('matrix', MatrixConfig),
        'missing_values': ('missing', MissingValueConfig),
        'aggregation': ('aggregation', AggregationConfig),
        'normalization': ('normalization', NormalizationConfig),
    }

    @classmethod
    def from_dict(cls, config: dict) -> PipelineConfig:
        """Build from a nested dict keyed by section name (see ``SECTIONS``).

        Other top-level keys are ignored; unknown keys inside a known section
        raise PipelineError.
        """
        kwargs = {}
        for section, (attribute, config_cls) in cls.SECTIONS.items():
            values = config.get(section) or {}
            known = {f.name for f in fields(config_cls)}
            unknown = sorted(set(values) - known)
            if unknown:
                raise PipelineError(
                    f"Unknown option(s) in '{section}': {unknown}", stage='config'
                )
            kwargs[attribute] = config_cls(**values)
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return {
            section: asdict(getattr(self, attribute))
            for section, (attribute, _) in self.SECTIONS.items()
        }


@dataclass
class PipelineResult:
    """Results from a full pipeline run."""

    features: QuantMatrix
    proteins: QuantMatrix
    aggregation: AggregationResult
    normalization: NormalizationResult
    missing: MissingFilterResult
    steps: list[FilterStep]
    method_log: list[str]

    @property
    def shifts(self) -> pd.Series:
        return self.normalization.shifts


def _run_stage(stage: str, func: Callable, *args, **kwargs) -> Any:
    try:
        return func(*args, **kwargs)
    except PipelineError as e:
        logger.error(f"Stage '{stage}' failed: {e.message}")
        raise e.with_stage(stage)
    except Exception as e:
        logger.error(f"Stage '{stage}' failed unexpectedly: {type(e).__name__}: {e}")
        raise PipelineError(f"{type(e).__name__}: {e}", stage=stage) from e


def run_pipeline(
    data: pd.DataFrame,
    config: PipelineConfig | None = None,
    contaminants: set[str] | None = None,
    sample_metadata: pd.DataFrame | None = None,
) -> PipelineResult:
    """Run parse -> quality -> matrix -> missing -> aggregate -> normalize.

    Args:
        data: Raw PD export (PSM or PeptideGroups)
        config: Stage configuration (defaults when None)
        contaminants: Contaminant accessions
        sample_metadata: Optional sample table indexed by sample id with an
            ``abundance_column`` column; derived from column names if None

    Returns:
        PipelineResult with feature- and group-level matrices and audit trail

    Raises:
        PipelineError: Any structural error, annotated with its stage

    """
    config = config or PipelineConfig()
    agg_config = config.aggregation
    if agg_config.group_by not in GROUP_LEVELS:
        raise PipelineError(
            f"Unknown group level '{agg_config.group_by}', expected one of {GROUP_LEVELS}",
            stage='config',
        )

    method_log = []
    steps = []

    # Stage 1: parse
    parsed = _run_stage('parse', parse_features, data, contaminants, config.parse)
    steps.extend(parsed.steps)
    method_log.append(
        f"Parsed {len(data)} -> {len(parsed.data)} {config.parse.level}s "
        f"({len(parsed.abundance_columns)} abundance columns)"
    )

    # Stage 2: quality
    quality = _run_stage('quality', filter_quality, parsed.data, config.quality)
    steps.extend(quality.steps)
    method_log.append(f"Quality filter: {len(parsed.data)} -> {len(quality.data)} rows")
    table = quality.data

    # Stage 3: matrix
    group_col = config.parse.master_protein_col
    if agg_config.group_by == 'site':
        group_col = 'site_key'
        before = table
        table = _run_stage(
            'sites', add_site_key, table,
            modification=agg_config.modification,
            master_protein_col=config.parse.master_protein_col,
            key_col=group_col,
        )
        steps.append(record_step('sites', f'localised {agg_config.modification} site', before, table,
                                 config.parse.master_protein_col))
        method_log.append(f"Grouping by {agg_config.modification} site ({table[group_col].nunique()} sites)")

    features = _run_stage(
        'matrix', build_quant_matrix, table, parsed.abundance_columns,
        sample_metadata=sample_metadata,
        feature_key=config.matrix.feature_key,
        prefix=config.parse.abundance_prefix,
        zero_as_missing=config.matrix.zero_as_missing,
    )
    method_log.append(f"Matrix: {features.n_features} features x {len(features.samples)} samples")

    log_first = agg_config.log_before_aggregation
    if log_first:
        features = log2_transform(features)
        method_log.append("Log2-transformed before aggregation")

    # Stage 4: missing values
    missing_config = replace(config.missing, group_col=group_col)
    missing = _run_stage('missing', filter_missing_fixed_point, features, missing_config)
    steps.extend(missing.steps)
    method_log.append(
        f"Missing-value filter: {features.n_features} -> {missing.matrix.n_features} rows "
        f"({missing.n_iterations} passes, converged={missing.converged})"
    )

    # Stage 5: aggregate
    aggregation = _run_stage(
        'aggregate', aggregate, missing.matrix,
        group_col=group_col,
        method=agg_config.method,
        max_iter=agg_config.max_iter,
        tol=agg_config.tol,
        keep_columns=agg_config.keep_columns,
    )
    method_log.append(
        f"Aggregation ({agg_config.method}): {missing.matrix.n_features} features -> "
        f"{aggregation.matrix.n_features} groups"
    )
    if aggregation.n_not_converged:
        method_log.append(f"Warning: {aggregation.n_not_converged} groups did not converge")

    # Stage 6: normalize
    norm_config = config.normalization
    if log_first and norm_config.log2:
        norm_config = replace(norm_config, log2=False)
    normalized = _run_stage('normalize', normalize, aggregation.matrix, norm_config)
    method_log.append(f"Normalization: {norm_config.method} (log2={norm_config.log2 or log_first})")

    return PipelineResult(
        features=missing.matrix,
        proteins=normalized.matrix,
        aggregation=aggregation,
        normalization=normalized,
        missing=missing,
        steps=steps,
        method_log=method_log,
    )
