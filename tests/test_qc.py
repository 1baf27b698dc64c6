"""Tests for hdxqc.qc module."""

import numpy as np
import pandas as pd
import pytest

from hdxqc import compute_mass_error, imtime_outliers, intensity_outliers, rtime_outliers
from hdxqc.qc import _flag_iqr_outliers
from hdxqc.utils import DEFAULT_COLUMNS, WIDE_LEVELS


def _intensity_data(matrix):
    """Minimal HDX data dictionary holding one intensity field."""
    n_peptides, n_samples = matrix.shape
    samples = pd.MultiIndex.from_tuples(
        [('wt', float(t), r) for t in range(n_samples // 3) for r in (1, 2, 3)],
        names=['condition', 'timepoint', 'replicate'],
    )
    index = pd.Index([f"PEP{i}2" for i in range(n_peptides)], name='fnames')
    intensity = pd.DataFrame(matrix, index=index, columns=samples)
    uptake = pd.DataFrame(np.zeros_like(matrix), index=index, columns=samples)

    wide = pd.concat({'X..Deut': uptake, 'Max.Inty': intensity}, axis=1)
    wide.columns = wide.columns.set_names(WIDE_LEVELS)
    return {'wide': wide, 'assay': uptake, 'columns': dict(DEFAULT_COLUMNS)}


# Deviations with zero mean and unit sample variance
_Z = np.array([-1.5, -1.0, -0.5, 0.5, 1.0, 1.5])
_Z = _Z / _Z.std(ddof=1)


class TestComputeMassError:
    def test_ppm_error(self, prepped_data):
        errors = compute_mass_error(prepped_data)

        assert len(errors) == 2 * 18
        np.testing.assert_allclose(errors['ppm_error'], 5.0, atol=0.01)

    def test_columns(self, prepped_data):
        errors = compute_mass_error(prepped_data)
        assert list(errors.columns) == [
            'theoretical_centroid', 'ppm_error', 'peptide', 'condition', 'timepoint', 'replicate'
        ]

    def test_missing_field_raises(self, prepped_data):
        with pytest.raises(ValueError):
            compute_mass_error(prepped_data, e_centroid='Not.A.Field')


class TestIntensityOutliers:
    def test_off_trend_variance_flagged(self):
        means = np.exp(np.linspace(8, 14, 20))
        matrix = means[:, None] * (1 + 0.05 * _Z[None, :])
        # 100x the variance of the trend at the extreme mean
        matrix[-1] = means[-1] * (1 + 0.5 * _Z)

        result = intensity_outliers(_intensity_data(matrix), intensity='Max.Inty')

        assert result.loc['PEP192', 'outlier'] == 1
        assert result['outlier'].sum() == 1

    def test_identical_variance_never_flagged(self):
        means = np.exp(np.linspace(8, 14, 20))
        matrix = means[:, None] + 300.0 * _Z[None, :]

        result = intensity_outliers(_intensity_data(matrix), intensity='Max.Inty')

        assert result['outlier'].sum() == 0

    def test_non_finite_statistics_excluded(self):
        means = np.exp(np.linspace(8, 14, 20))
        matrix = means[:, None] * (1 + 0.05 * _Z[None, :])
        matrix[0] = 1000.0  # zero variance

        result = intensity_outliers(_intensity_data(matrix), intensity='Max.Inty')

        assert np.isnan(result.loc['PEP02', 'cooks_distance'])
        assert result.loc['PEP02', 'outlier'] == 0

    def test_few_peptides_not_fitted(self, prepped_data):
        result = intensity_outliers(prepped_data)

        assert result.index.name == 'peptide'
        assert (result['cooks_distance'] == 0).all()
        assert (result['outlier'] == 0).all()


class TestFlagIqrOutliers:
    def test_boundary_is_exclusive(self):
        # q1 = 1, q3 = 3, so the boundary is exactly 3
        long = pd.DataFrame({
            'experiment': ['a'] * 5,
            'shift': [0.0, 1.0, 2.0, 3.0, 3.0 + 1e-9],
        })
        flagged = _flag_iqr_outliers(long, 'shift')
        assert list(flagged['outlier']) == [0, 0, 0, 0, 1]

    def test_groups_are_independent(self):
        long = pd.DataFrame({
            'experiment': ['a'] * 4 + ['b'] * 4,
            'shift': [0.0, 0.0, 0.0, 0.0, 0.0, 1.0, 2.0, 2.5],
        })
        flagged = _flag_iqr_outliers(long, 'shift')
        # IQR of group 'a' is zero, so only non-zero shifts would be flagged there
        assert flagged['outlier'].iloc[:4].sum() == 0
        assert flagged['outlier'].iloc[4:].sum() == 1


class TestWindowOutliers:
    def test_constant_windows_not_flagged(self, prepped_data):
        result = rtime_outliers(prepped_data)

        assert set(result) == {'left', 'right'}
        for side in ('left', 'right'):
            frame = result[side]
            assert len(frame) == 2 * 18
            assert (frame['shift'] == 0).all()
            assert (frame['outlier'] == 0).all()
            assert {'peptide', 'experiment', 'shift', 'search', 'outlier'} <= set(frame.columns)

    def test_shifted_window_flagged(self, export_factory, build_data):
        def rt(p, state, t, rep):
            if p == 0 and state == 'holo' and t == 1 and rep == 2:
                return '6.10-6.60'
            return f"{5.1 + p:.2f}-{5.6 + p:.2f}"

        data = build_data(export_factory(rt=rt))
        result = rtime_outliers(data)

        for side in ('left', 'right'):
            flagged = result[side][result[side]['outlier'] == 1]
            assert len(flagged) == 1
            assert flagged['peptide'].iloc[0] == 'AAKLVSEL2'
            assert flagged['experiment'].iloc[0] == 'iBET_30_2'
            np.testing.assert_allclose(flagged['shift'].iloc[0], 1.0)

    def test_ion_mobility(self, prepped_data):
        result = imtime_outliers(prepped_data)
        assert (result['left']['outlier'] == 0).all()
        assert (result['right']['outlier'] == 0).all()

    def test_missing_window_field_raises(self, prepped_data):
        with pytest.raises(ValueError):
            rtime_outliers(prepped_data, left='Not.A.Field')
