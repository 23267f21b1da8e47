"""Quantitative matrix container and builder.

A QuantMatrix is the wide representation used by every stage after parsing:

    exprs         features x samples, float, NaN for missing
    feature_data  row metadata aligned on the exprs index
    sample_data   one row per sample, ordered like the exprs columns

The builder splits a filtered feature table into these three pieces, deriving
sample metadata from Proteome Discoverer abundance column names when no
explicit mapping is given.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from .errors import InputFormatError, IntegrityError, ShapeMismatchError

logger = logging.getLogger(__name__)

# TMT reporter tags (126, 127N, ... 135N) and SILAC label states
ISOBARIC_TAG_PATTERN = re.compile(r'^\d{3}[NC]?$')
SILAC_LABELS = {'light', 'medium', 'heavy'}
FILE_ID_PATTERN = re.compile(r'^F\d+$')

SAMPLE_METADATA_COLUMNS = ['abundance_column', 'file', 'tag', 'sample_type', 'condition']


@dataclass
class QuantMatrix:
    """Feature x sample matrix with row and column metadata."""

    exprs: pd.DataFrame
    feature_data: pd.DataFrame
    sample_data: pd.DataFrame

    def __post_init__(self):
        if list(self.exprs.columns) != list(self.sample_data.index):
            raise ShapeMismatchError(
                f"Matrix has {self.exprs.shape[1]} columns but sample metadata "
                f"has {len(self.sample_data)} rows (or a different order): "
                f"{list(self.exprs.columns)[:5]} vs {list(self.sample_data.index)[:5]}"
            )
        if not self.exprs.index.equals(self.feature_data.index):
            raise ShapeMismatchError(
                f"Feature metadata ({len(self.feature_data)} rows) is not aligned "
                f"with the matrix ({len(self.exprs)} rows)"
            )
        if not self.exprs.index.is_unique:
            dupes = self.exprs.index[self.exprs.index.duplicated()].unique().tolist()
            raise IntegrityError(f"Duplicate row keys in matrix: {dupes[:5]}")

    @property
    def samples(self) -> list[str]:
        return list(self.exprs.columns)

    @property
    def n_features(self) -> int:
        return len(self.exprs)

    def missing_fraction(self) -> pd.Series:
        """Proportion of missing values per row."""
        if self.exprs.shape[1] == 0:
            return pd.Series(0.0, index=self.exprs.index)
        return self.exprs.isna().sum(axis=1) / self.exprs.shape[1]

    def subset(self, rows: Iterable) -> QuantMatrix:
        """Return a new matrix restricted to ``rows`` (order preserved)."""
        rows = list(rows)
        return QuantMatrix(
            exprs=self.exprs.loc[rows].copy(),
            feature_data=self.feature_data.loc[rows].copy(),
            sample_data=self.sample_data.copy(),
        )

    def with_exprs(self, exprs: pd.DataFrame) -> QuantMatrix:
        """Return a new matrix with replaced values and copied metadata."""
        return QuantMatrix(
            exprs=exprs,
            feature_data=self.feature_data.loc[exprs.index].copy(),
            sample_data=self.sample_data.copy(),
        )

    def to_long(self, value_name: str = 'value') -> pd.DataFrame:
        """Melt the matrix to long format (feature_id, sample, value)."""
        index_name = self.exprs.index.name or 'feature_id'
        long = self.exprs.rename_axis(index_name).reset_index().melt(
            id_vars=[index_name],
            var_name='sample',
            value_name=value_name,
        )
        return long


def parse_abundance_column(column: str, prefix: str = 'Abundance') -> dict:
    """Split a PD abundance column name into file, tag and descriptors.

    ``Abundance: F1: 127N, Sample, Treated`` gives file ``F1``, tag ``127N``,
    sample type ``Sample`` and condition ``Treated``. LFQ columns such as
    ``Abundance: F3: Sample`` have no tag.
    """
    if not column.startswith(prefix):
        raise InputFormatError(
            f"Column '{column}' does not start with abundance prefix '{prefix}'"
        )

    tokens = [t.strip() for t in re.split(r'[:,]', column[len(prefix):])]
    tokens = [t for t in tokens if t]

    info = {'abundance_column': column, 'file': None, 'tag': None,
            'sample_type': None, 'condition': None}
    descriptors = []
    for token in tokens:
        if info['file'] is None and FILE_ID_PATTERN.match(token):
            info['file'] = token
        elif info['tag'] is None and (
            ISOBARIC_TAG_PATTERN.match(token) or token.lower() in SILAC_LABELS
        ):
            info['tag'] = token
        else:
            descriptors.append(token)

    if descriptors:
        info['sample_type'] = descriptors[0]
    if len(descriptors) > 1:
        info['condition'] = ', '.join(descriptors[1:])
    return info


def samples_from_abundance_columns(
    columns: list[str],
    prefix: str = 'Abundance',
) -> pd.DataFrame:
    """Derive sample metadata from PD abundance column names.

    Sample ids are the label tag when present, otherwise the file id. When
    more than one file shares a tag the id becomes ``<file>_<tag>``.
    """
    if not columns:
        raise InputFormatError("No abundance columns to derive samples from")

    records = [parse_abundance_column(col, prefix) for col in columns]
    meta = pd.DataFrame.from_records(records, columns=SAMPLE_METADATA_COLUMNS)

    ids = meta['tag'].fillna(meta['file'])
    if ids.isna().any() or ids.duplicated().any():
        file_part = meta['file'].fillna('')
        tag_part = meta['tag'].fillna('')
        ids = (file_part + '_' + tag_part).str.strip('_')
    if (ids == '').any() or ids.duplicated().any():
        # Fall back to the full column name minus the prefix
        ids = pd.Series(
            [col[len(prefix):].strip(' :') or col for col in columns],
            index=meta.index,
        )
    if ids.duplicated().any():
        raise IntegrityError(
            f"Could not derive unique sample ids from columns: "
            f"{ids[ids.duplicated()].tolist()}"
        )

    meta.index = pd.Index(ids.tolist(), name='sample')
    return meta


def _check_sample_metadata(
    sample_metadata: pd.DataFrame,
    abundance_columns: list[str],
) -> pd.DataFrame:
    if 'abundance_column' not in sample_metadata.columns:
        raise InputFormatError(
            "Sample metadata must have an 'abundance_column' column mapping "
            "samples to abundance columns"
        )
    if len(sample_metadata) != len(abundance_columns):
        raise ShapeMismatchError(
            f"Found {len(abundance_columns)} abundance columns but sample "
            f"metadata describes {len(sample_metadata)} samples"
        )
    if not sample_metadata.index.is_unique:
        dupes = sample_metadata.index[sample_metadata.index.duplicated()].tolist()
        raise IntegrityError(f"Duplicate sample ids in metadata: {dupes}")

    mapped = sample_metadata['abundance_column'].tolist()
    if len(set(mapped)) != len(mapped):
        raise IntegrityError("Sample metadata maps two samples to the same abundance column")
    unmapped = [col for col in abundance_columns if col not in set(mapped)]
    if unmapped:
        raise ShapeMismatchError(
            f"Abundance columns without a sample metadata entry: {unmapped[:5]}"
        )
    return sample_metadata.copy()


def build_quant_matrix(
    data: pd.DataFrame,
    abundance_columns: list[str],
    sample_metadata: Optional[pd.DataFrame] = None,
    feature_key: Optional[str] = None,
    prefix: str = 'Abundance',
    zero_as_missing: bool = True,
) -> QuantMatrix:
    """Split a feature table into a QuantMatrix.

    Args:
        data: Filtered feature table
        abundance_columns: Columns holding per-sample quantification
        sample_metadata: Optional DataFrame indexed by sample id with an
            ``abundance_column`` column. Derived from column names if None.
            Matrix columns follow the order of this table.
        feature_key: Column with unique feature identifiers. The table index
            is used when None.
        prefix: Abundance column prefix (for derived metadata)
        zero_as_missing: Treat zero intensities as missing values

    Returns:
        QuantMatrix with features as rows and samples as columns

    Raises:
        InputFormatError: If abundance or key columns are absent
        ShapeMismatchError: If the sample metadata does not match the columns
        IntegrityError: If feature keys are not unique

    """
    if not abundance_columns:
        raise InputFormatError("No abundance columns given")
    absent = [col for col in abundance_columns if col not in data.columns]
    if absent:
        raise InputFormatError(f"Abundance columns not found in table: {absent[:5]}")

    if sample_metadata is None:
        sample_metadata = samples_from_abundance_columns(abundance_columns, prefix)
    else:
        sample_metadata = _check_sample_metadata(sample_metadata, abundance_columns)
    sample_metadata.index.name = 'sample'

    ordered_columns = sample_metadata['abundance_column'].tolist()

    if feature_key is not None:
        if feature_key not in data.columns:
            raise InputFormatError(f"Feature key column '{feature_key}' not found")
        index = pd.Index(data[feature_key].astype(str), name='feature_id')
    else:
        index = pd.Index(data.index, name='feature_id')

    if not index.is_unique:
        dupes = index[index.duplicated()].unique().tolist()
        raise IntegrityError(f"Duplicate feature keys: {dupes[:5]}")

    exprs = data[ordered_columns].apply(pd.to_numeric, errors='coerce')
    exprs = exprs.astype(float).replace([np.inf, -np.inf], np.nan)
    if zero_as_missing:
        exprs = exprs.mask(exprs == 0)
    exprs.columns = sample_metadata.index.tolist()
    exprs.index = index

    feature_data = data.drop(columns=list(abundance_columns)).copy()
    feature_data.index = index

    logger.info(
        f"Built matrix: {len(exprs)} features x {exprs.shape[1]} samples, "
        f"{int(exprs.isna().sum().sum())} missing values"
    )

    return QuantMatrix(exprs=exprs, feature_data=feature_data, sample_data=sample_metadata)


def log2_transform(qm: QuantMatrix) -> QuantMatrix:
    """Log2-transform a matrix of intensities; non-positive values become NaN."""
    values = qm.exprs.where(qm.exprs > 0)
    return qm.with_exprs(np.log2(values))
