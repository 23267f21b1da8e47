"""Tests for missing-value filtering."""

import numpy as np
import pandas as pd
import pytest

from pd_rollup.errors import ConvergenceWarning, InputFormatError, IntegrityError
from pd_rollup.matrix import QuantMatrix
from pd_rollup.missing import (
    MissingValueConfig,
    filter_missing,
    filter_missing_fixed_point,
    restrict_features_per_group,
)

NA = np.nan


def make_matrix(rows, groups, samples=None):
    """QuantMatrix from a dict of row key -> values and a list of group keys."""
    keys = list(rows)
    n_samples = len(rows[keys[0]])
    samples = samples or [f'S{i + 1}' for i in range(n_samples)]
    exprs = pd.DataFrame(
        [rows[k] for k in keys],
        index=pd.Index(keys, name='feature_id'),
        columns=samples,
        dtype=float,
    )
    return QuantMatrix(
        exprs=exprs,
        feature_data=pd.DataFrame({'protein': groups}, index=exprs.index),
        sample_data=pd.DataFrame(index=pd.Index(samples, name='sample')),
    )


def assert_group_support(qm, group_col, min_features):
    """Every group/sample cell has zero or at least ``min_features`` values."""
    counts = qm.exprs.notna().groupby(qm.feature_data[group_col].values).sum()
    assert ((counts == 0) | (counts >= min_features)).all().all()


class TestFilterMissing:
    """Tests for the per-row missingness threshold."""

    def test_eight_samples_half_missing(self):
        qm = make_matrix({
            'five_missing': [1, NA, NA, NA, NA, NA, 1, 1],
            'four_missing': [1, 1, NA, NA, NA, NA, 1, 1],
            'complete': [1, 1, 1, 1, 1, 1, 1, 1],
        }, ['P1', 'P1', 'P2'])

        result = filter_missing(qm, 0.5)

        assert result.exprs.index.tolist() == ['four_missing', 'complete']

    def test_zero_threshold_requires_complete_rows(self):
        qm = make_matrix({'a': [1, NA], 'b': [1, 1]}, ['P1', 'P1'])
        assert filter_missing(qm, 0.0).exprs.index.tolist() == ['b']

    def test_invalid_proportion(self):
        qm = make_matrix({'a': [1, 1]}, ['P1'])
        with pytest.raises(InputFormatError):
            filter_missing(qm, 1.5)

    def test_metadata_follows_rows(self):
        qm = make_matrix({'a': [NA, NA, 1], 'b': [1, 1, 1]}, ['P1', 'P2'])
        result = filter_missing(qm, 0.5)
        assert result.feature_data['protein'].tolist() == ['P2']


class TestRestrictFeaturesPerGroup:
    """Tests for the per-group support rule."""

    def test_blanks_weakly_supported_samples(self):
        qm = make_matrix({
            'a': [1, 1, 1],
            'b': [1, 1, NA],
            'c': [1, NA, NA],
        }, ['P1', 'P1', 'P1'])

        result = restrict_features_per_group(qm, 'protein', 2)

        # S3 has a single value in P1 and is blanked
        assert result.exprs.loc['a'].isna().tolist() == [False, False, True]
        assert_group_support(result, 'protein', 2)

    def test_rows_left_empty_are_kept(self):
        """Blanking never removes rows; that is left to the missingness filter."""
        qm = make_matrix({
            'a': [1, 1],
            'b': [1, 1],
            'c': [1, 1],
        }, ['P1', 'P1', 'P2'])

        result = restrict_features_per_group(qm, 'protein', 2)

        assert result.exprs.index.tolist() == ['a', 'b', 'c']
        assert result.exprs.loc['c'].isna().all()
        assert result.feature_data.loc['c', 'protein'] == 'P2'

    def test_missing_group_column(self):
        qm = make_matrix({'a': [1, 1]}, ['P1'])
        with pytest.raises(InputFormatError):
            restrict_features_per_group(qm, 'gene', 2)

    def test_missing_group_key(self):
        qm = make_matrix({'a': [1, 1], 'b': [1, 1]}, ['P1', None])
        with pytest.raises(IntegrityError):
            restrict_features_per_group(qm, 'protein', 2)


class TestFixedPoint:
    """Tests for alternating the two filters."""

    @pytest.fixture
    def cascading(self):
        return make_matrix({
            # P1: blanking S3 in pass 1 leaves a stable matrix
            'a': [1, 1, 1, NA],
            'b': [1, 1, NA, NA],
            'c': [1, NA, NA, NA],
            # P3: blanking drops both rows over the threshold
            'f': [1, 1, NA, NA],
            'g': [1, NA, 1, NA],
        }, ['P1', 'P1', 'P1', 'P3', 'P3'])

    def test_converges(self, cascading):
        config = MissingValueConfig(max_missing=0.5, min_features=2, group_col='protein')

        result = filter_missing_fixed_point(cascading, config)

        assert result.converged
        assert result.n_iterations == 2
        assert result.matrix.exprs.index.tolist() == ['a', 'b']
        assert result.matrix.exprs.loc['a'].isna().tolist() == [False, False, True, True]

    def test_result_satisfies_both_filters(self, cascading):
        config = MissingValueConfig(max_missing=0.5, min_features=2, group_col='protein')

        result = filter_missing_fixed_point(cascading, config)

        assert (result.matrix.missing_fraction() <= 0.5).all()
        assert_group_support(result.matrix, 'protein', 2)

    def test_iteration_cap_warns(self, cascading):
        config = MissingValueConfig(
            max_missing=0.5, min_features=2, group_col='protein', max_iterations=1
        )

        with pytest.warns(ConvergenceWarning):
            result = filter_missing_fixed_point(cascading, config)

        assert not result.converged
        assert result.n_iterations == 1

    def test_blanked_rows_kept_when_missingness_allowed(self):
        qm = make_matrix({
            'a': [1, 1],
            'b': [1, 1],
            'c': [1, 1],
        }, ['P1', 'P1', 'P2'])
        config = MissingValueConfig(max_missing=1.0, min_features=2, group_col='protein')

        result = filter_missing_fixed_point(qm, config)

        assert result.converged
        assert result.matrix.exprs.index.tolist() == ['a', 'b', 'c']
        assert result.matrix.exprs.loc['c'].isna().all()

    def test_blanked_rows_removed_by_missingness_filter(self):
        qm = make_matrix({
            'a': [1, 1],
            'b': [1, 1],
            'c': [1, 1],
        }, ['P1', 'P1', 'P2'])
        config = MissingValueConfig(max_missing=0.5, min_features=2, group_col='protein')

        result = filter_missing_fixed_point(qm, config)

        assert result.converged
        assert result.matrix.exprs.index.tolist() == ['a', 'b']

    def test_without_group_rule_single_pass(self, cascading):
        config = MissingValueConfig(max_missing=0.5, min_features=None, group_col='protein')

        result = filter_missing_fixed_point(cascading, config)

        assert result.converged
        assert result.n_iterations == 1
        assert result.matrix.exprs.index.tolist() == ['a', 'b', 'f', 'g']

    def test_steps_recorded(self, cascading):
        config = MissingValueConfig(max_missing=0.5, min_features=2, group_col='protein')

        result = filter_missing_fixed_point(cascading, config)

        # initial filter + two filters per pass
        assert len(result.steps) == 1 + 2 * result.n_iterations
        assert result.steps[0].rows_before == 5
        assert result.steps[0].rows_after == 4
