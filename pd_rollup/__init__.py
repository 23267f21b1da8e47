"""
pd-rollup: quantitative roll-up for Proteome Discoverer exports

Parses PSM / PeptideGroups tables from LFQ, TMT, SILAC and phospho
experiments, removes contaminant and ambiguous features, applies QC
thresholds, filters missing values, aggregates features to protein or
PTM-site level and median-normalizes the result for a downstream
statistical backend.
"""

__version__ = "0.1.0"

from .errors import (
    PipelineError,
    InputFormatError,
    IntegrityError,
    ThresholdConfigError,
    ShapeMismatchError,
    ConvergenceWarning,
)
from .data_io import (
    load_pd_export,
    validate_pd_export,
    load_contaminant_accessions,
    load_sample_metadata,
    write_quant_bundle,
    read_quant_bundle,
    write_flat_table,
)
from .parsing import (
    parse_features,
    ParserConfig,
    ParseResult,
)
from .quality import (
    filter_quality,
    QualityFilterConfig,
)
from .matrix import (
    QuantMatrix,
    build_quant_matrix,
    samples_from_abundance_columns,
    log2_transform,
)
from .missing import (
    filter_missing,
    restrict_features_per_group,
    filter_missing_fixed_point,
    MissingValueConfig,
)
from .rollup import (
    aggregate,
    robust_summary,
    AggregationResult,
)
from .sites import add_site_key
from .normalization import (
    center_normalize,
    remove_shifts,
    normalize,
    NormalizationConfig,
)
from .pipeline import (
    run_pipeline,
    PipelineConfig,
    PipelineResult,
)
