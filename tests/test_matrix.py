"""Tests for the QuantMatrix container and builder."""

import numpy as np
import pandas as pd
import pytest

from pd_rollup.errors import InputFormatError, IntegrityError, ShapeMismatchError
from pd_rollup.matrix import (
    QuantMatrix,
    build_quant_matrix,
    log2_transform,
    parse_abundance_column,
    samples_from_abundance_columns,
)

TMT_COLUMNS = [
    'Abundance: F1: 126, Sample, Control',
    'Abundance: F1: 127N, Sample, Treated',
    'Abundance: F1: 127C, Sample, Treated',
]


@pytest.fixture
def feature_table():
    return pd.DataFrame({
        'Sequence': ['AAK', 'CCK', 'DDK'],
        'Master Protein Accessions': ['P1', 'P1', 'P2'],
        TMT_COLUMNS[0]: [100.0, 0.0, 50.0],
        TMT_COLUMNS[1]: [200.0, 80.0, np.nan],
        TMT_COLUMNS[2]: [150.0, 60.0, 40.0],
    }, index=[10, 11, 12])


class TestParseAbundanceColumn:
    """Tests for abundance column name parsing."""

    def test_tmt(self):
        info = parse_abundance_column('Abundance: F1: 127N, Sample, Treated')
        assert info['file'] == 'F1'
        assert info['tag'] == '127N'
        assert info['sample_type'] == 'Sample'
        assert info['condition'] == 'Treated'

    def test_label_free(self):
        info = parse_abundance_column('Abundance: F3: Sample')
        assert info['file'] == 'F3'
        assert info['tag'] is None
        assert info['sample_type'] == 'Sample'

    def test_silac(self):
        info = parse_abundance_column('Abundance: F2: Heavy, Sample')
        assert info['tag'] == 'Heavy'

    def test_wrong_prefix(self):
        with pytest.raises(InputFormatError):
            parse_abundance_column('Intensity: F1')


class TestSamplesFromAbundanceColumns:
    """Tests for derived sample metadata."""

    def test_tmt_ids_are_tags(self):
        meta = samples_from_abundance_columns(TMT_COLUMNS)
        assert meta.index.tolist() == ['126', '127N', '127C']
        assert meta.index.name == 'sample'
        assert meta['condition'].tolist() == ['Control', 'Treated', 'Treated']

    def test_label_free_ids_are_files(self):
        meta = samples_from_abundance_columns(
            ['Abundance: F1: Sample', 'Abundance: F2: Sample']
        )
        assert meta.index.tolist() == ['F1', 'F2']

    def test_shared_tags_across_files(self):
        meta = samples_from_abundance_columns(
            ['Abundance: F1: 126, Sample', 'Abundance: F2: 126, Sample']
        )
        assert meta.index.tolist() == ['F1_126', 'F2_126']

    def test_empty(self):
        with pytest.raises(InputFormatError):
            samples_from_abundance_columns([])


class TestBuildQuantMatrix:
    """Tests for matrix construction."""

    def test_shape_and_labels(self, feature_table):
        qm = build_quant_matrix(feature_table, TMT_COLUMNS)

        assert qm.exprs.shape == (3, 3)
        assert qm.samples == ['126', '127N', '127C']
        assert qm.exprs.index.tolist() == [10, 11, 12]
        assert 'Sequence' in qm.feature_data.columns
        assert not any(c.startswith('Abundance') for c in qm.feature_data.columns)

    def test_zero_is_missing(self, feature_table):
        qm = build_quant_matrix(feature_table, TMT_COLUMNS)
        assert np.isnan(qm.exprs.loc[11, '126'])

        qm = build_quant_matrix(feature_table, TMT_COLUMNS, zero_as_missing=False)
        assert qm.exprs.loc[11, '126'] == 0.0

    def test_feature_key(self, feature_table):
        qm = build_quant_matrix(feature_table, TMT_COLUMNS, feature_key='Sequence')
        assert qm.exprs.index.tolist() == ['AAK', 'CCK', 'DDK']

    def test_duplicate_feature_key(self, feature_table):
        feature_table['Sequence'] = ['AAK', 'AAK', 'DDK']
        with pytest.raises(IntegrityError, match='AAK'):
            build_quant_matrix(feature_table, TMT_COLUMNS, feature_key='Sequence')

    def test_missing_feature_key_column(self, feature_table):
        with pytest.raises(InputFormatError):
            build_quant_matrix(feature_table, TMT_COLUMNS, feature_key='Peptide')

    def test_explicit_metadata_orders_columns(self, feature_table):
        meta = pd.DataFrame({
            'abundance_column': [TMT_COLUMNS[2], TMT_COLUMNS[0], TMT_COLUMNS[1]],
            'condition': ['B', 'A', 'B'],
        }, index=pd.Index(['s3', 's1', 's2'], name='sample'))

        qm = build_quant_matrix(feature_table, TMT_COLUMNS, sample_metadata=meta)

        assert qm.samples == ['s3', 's1', 's2']
        assert qm.exprs.loc[10].tolist() == [150.0, 100.0, 200.0]

    def test_metadata_count_mismatch(self, feature_table):
        meta = pd.DataFrame(
            {'abundance_column': TMT_COLUMNS[:2]},
            index=pd.Index(['s1', 's2'], name='sample'),
        )
        with pytest.raises(ShapeMismatchError):
            build_quant_matrix(feature_table, TMT_COLUMNS, sample_metadata=meta)

    def test_metadata_unknown_column(self, feature_table):
        meta = pd.DataFrame(
            {'abundance_column': TMT_COLUMNS[:2] + ['Abundance: F9: 131, Sample']},
            index=pd.Index(['s1', 's2', 's3'], name='sample'),
        )
        with pytest.raises(ShapeMismatchError):
            build_quant_matrix(feature_table, TMT_COLUMNS, sample_metadata=meta)

    def test_absent_abundance_column(self, feature_table):
        with pytest.raises(InputFormatError):
            build_quant_matrix(feature_table, TMT_COLUMNS + ['Abundance: F2: 126, Sample'])


class TestQuantMatrix:
    """Tests for container invariants and helpers."""

    def _matrix(self):
        exprs = pd.DataFrame(
            [[1.0, np.nan], [np.nan, np.nan], [3.0, 4.0]],
            index=pd.Index(['a', 'b', 'c'], name='feature_id'),
            columns=['S1', 'S2'],
        )
        return QuantMatrix(
            exprs=exprs,
            feature_data=pd.DataFrame({'group': ['g1', 'g1', 'g2']}, index=exprs.index),
            sample_data=pd.DataFrame(index=pd.Index(['S1', 'S2'], name='sample')),
        )

    def test_column_mismatch(self):
        qm = self._matrix()
        with pytest.raises(ShapeMismatchError):
            QuantMatrix(
                exprs=qm.exprs,
                feature_data=qm.feature_data,
                sample_data=pd.DataFrame(index=['S1', 'S2', 'S3']),
            )

    def test_row_mismatch(self):
        qm = self._matrix()
        with pytest.raises(ShapeMismatchError):
            QuantMatrix(
                exprs=qm.exprs,
                feature_data=qm.feature_data.iloc[:2],
                sample_data=qm.sample_data,
            )

    def test_duplicate_rows(self):
        exprs = pd.DataFrame([[1.0], [2.0]], index=['a', 'a'], columns=['S1'])
        with pytest.raises(IntegrityError):
            QuantMatrix(
                exprs=exprs,
                feature_data=pd.DataFrame(index=exprs.index),
                sample_data=pd.DataFrame(index=['S1']),
            )

    def test_missing_fraction(self):
        qm = self._matrix()
        assert qm.missing_fraction().tolist() == [0.5, 1.0, 0.0]

    def test_subset(self):
        sub = self._matrix().subset(['c', 'a'])
        assert sub.exprs.index.tolist() == ['c', 'a']
        assert sub.feature_data['group'].tolist() == ['g2', 'g1']

    def test_to_long(self):
        long = self._matrix().to_long()
        assert list(long.columns) == ['feature_id', 'sample', 'value']
        assert len(long) == 6

    def test_log2_transform(self):
        exprs = pd.DataFrame([[8.0, 0.0], [-1.0, 1.0]], index=['a', 'b'], columns=['S1', 'S2'])
        qm = QuantMatrix(
            exprs=exprs,
            feature_data=pd.DataFrame(index=exprs.index),
            sample_data=pd.DataFrame(index=['S1', 'S2']),
        )

        logged = log2_transform(qm).exprs

        assert logged.loc['a', 'S1'] == 3.0
        assert logged.loc['b', 'S2'] == 0.0
        assert np.isnan(logged.loc['a', 'S2'])
        assert np.isnan(logged.loc['b', 'S1'])
