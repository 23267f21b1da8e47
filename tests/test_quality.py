"""Tests for QC threshold filtering."""

import numpy as np
import pandas as pd
import pytest

from pd_rollup.errors import ThresholdConfigError
from pd_rollup.quality import (
    QualityFilterConfig,
    best_site_probability,
    filter_quan_info,
    filter_quality,
)


@pytest.fixture
def psms():
    return pd.DataFrame({
        'Master Protein Accessions': ['P1', 'P1', 'P2', 'P2', 'P3'],
        'Average Reporter S/N': [5.0, 12.0, 30.0, np.nan, 10.0],
        'Isolation Interference [%]': [10.0, 60.0, 20.0, 5.0, 50.0],
        'Delta Score': [0.1, 0.3, 0.5, 0.2, 0.0],
        'ptmRS: Best Site Probabilities': [
            'S5(Phospho): 99.2',
            'S5(Phospho): 99.2; T7(Phospho): 70.1',
            'Too many isoforms',
            'S3(Phospho): 80',
            'T2(Phospho): 100',
        ],
        'Quan Info': [np.nan, 'Unique', 'NoQuanValues', '', 'Excluded by Method'],
    })


class TestBestSiteProbability:
    """Tests for ptmRS score parsing."""

    def test_single_site(self):
        assert best_site_probability('S5(Phospho): 99.2') == pytest.approx(99.2)

    def test_least_confident_site(self):
        value = 'S5(Phospho): 99.2; T7(Phospho): 87.1'
        assert best_site_probability(value) == pytest.approx(87.1)

    def test_parenthesised_scores(self):
        assert best_site_probability('S5(99.2); T7(95)') == pytest.approx(95.0)

    def test_numeric(self):
        assert best_site_probability(75) == 75.0
        assert best_site_probability('75.5') == 75.5

    def test_no_score(self):
        assert np.isnan(best_site_probability('Too many isoforms'))
        assert np.isnan(best_site_probability(''))
        assert np.isnan(best_site_probability(None))


class TestFilterQuality:
    """Tests for threshold filtering."""

    def test_no_thresholds_passes_through(self, psms):
        result = filter_quality(psms, QualityFilterConfig())
        assert len(result.data) == len(psms)
        assert result.steps == []

    def test_signal_noise(self, psms):
        result = filter_quality(psms, QualityFilterConfig(min_signal_noise=10))
        # 5.0 fails, NaN fails, 10.0 passes (inclusive)
        assert result.data.index.tolist() == [1, 2, 4]

    def test_interference(self, psms):
        result = filter_quality(psms, QualityFilterConfig(max_interference=50))
        assert result.data.index.tolist() == [0, 2, 3, 4]

    def test_delta_score(self, psms):
        result = filter_quality(psms, QualityFilterConfig(min_delta_score=0.2))
        assert result.data.index.tolist() == [1, 2, 3]

    def test_localisation(self, psms):
        result = filter_quality(psms, QualityFilterConfig(min_localisation_score=75))
        assert result.data.index.tolist() == [0, 3, 4]
        assert result.data['ptm_localisation_score'].tolist() == [99.2, 80.0, 100.0]

    def test_thresholds_combine(self, psms):
        config = QualityFilterConfig(min_signal_noise=10, max_interference=50)
        result = filter_quality(psms, config)

        assert result.data.index.tolist() == [2, 4]
        assert [s.rows_after for s in result.steps] == [3, 2]

    def test_tmt_preset(self, psms):
        config = QualityFilterConfig.for_tmt(min_delta_score=0.2)
        assert config.min_signal_noise == 10.0
        assert config.max_interference == 50.0

        result = filter_quality(psms, config)
        assert result.data.index.tolist() == [2]

    def test_missing_metric_column_raises(self, psms):
        data = psms.drop(columns=['Average Reporter S/N'])
        with pytest.raises(ThresholdConfigError, match='Average Reporter S/N') as excinfo:
            filter_quality(data, QualityFilterConfig(min_signal_noise=10))
        assert excinfo.value.stage == 'quality'

    def test_missing_column_ignored_when_disabled(self, psms):
        data = psms.drop(columns=['Average Reporter S/N'])
        result = filter_quality(data, QualityFilterConfig(max_interference=50))
        assert len(result.data) == 4

    def test_protein_counts_recorded(self, psms):
        result = filter_quality(psms, QualityFilterConfig(min_signal_noise=10))
        step = result.steps[0]
        assert step.proteins_before == 3
        assert step.proteins_after == 3


class TestQuanInfo:
    """Tests for Quan Info filtering."""

    def test_keeps_unique_and_blank(self, psms):
        kept = filter_quan_info(psms)
        assert kept.index.tolist() == [0, 1, 3]

    def test_drop_unquantified_option(self, psms):
        result = filter_quality(psms, QualityFilterConfig(drop_unquantified=True))
        assert len(result.data) == 3
        assert result.steps[0].step == 'unquantified'

    def test_missing_column(self, psms):
        with pytest.raises(ThresholdConfigError):
            filter_quality(
                psms.drop(columns=['Quan Info']),
                QualityFilterConfig(drop_unquantified=True),
            )
