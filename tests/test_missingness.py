"""Tests for hdxqc.missingness module."""

import pytest

from hdxqc import impute_hdx, is_missing_at_random


def _gappy_uptake(p, state, t, rep):
    # peptide 0: all 9 'apo' values plus one 'holo' value missing (10 of 18)
    # peptide 1: the three 'holo' 300s values missing (3 of 18)
    if p == 0 and (state == 'apo' or (t == 0 and rep == 1)):
        return 'n/a'
    if p == 1 and state == 'holo' and t == 2:
        return 'n/a'
    return f"{2.0 * t + p:.2f}"


@pytest.fixture
def gappy_data(export_factory, build_data):
    return build_data(export_factory(uptake=_gappy_uptake))


class TestIsMissingAtRandom:
    def test_filters_peptides_over_threshold(self, gappy_data):
        result = is_missing_at_random(gappy_data)

        assert list(result['assay'].index) == ['KLVSELFG2']
        assert list(result['wide'].index) == ['KLVSELFG2']
        assert list(result['df'].index) == ['KLVSELFG2']

    def test_remaining_missing_within_threshold(self, gappy_data):
        threshold = 4
        result = is_missing_at_random(gappy_data, threshold=threshold)
        assert (result['assay'].isna().sum(axis=1) <= threshold).all()

    def test_threshold_equal_to_columns_removes_nothing(self, gappy_data):
        ncol = gappy_data['assay'].shape[1]
        result = is_missing_at_random(gappy_data, threshold=ncol)

        assert len(result['assay']) == len(gappy_data['assay'])
        assert (result['df']['mnar'] == 0).all()

    def test_no_filter_keeps_rows_and_flags(self, gappy_data):
        result = is_missing_at_random(gappy_data, filter=False)

        assert len(result['assay']) == 2
        assert result['df'].loc['AAKLVSEL2', 'mnar'] == 1
        assert result['df'].loc['KLVSELFG2', 'mnar'] == 0

    def test_threshold_from_config(self, gappy_data):
        gappy_data['config'] = {'qc_parameters': {'missing_threshold': 2}}
        result = is_missing_at_random(gappy_data, filter=False)
        assert (result['df']['mnar'] == 1).all()

    def test_metadata_updated(self, gappy_data):
        result = is_missing_at_random(gappy_data)
        assert result['metadata']['n_peptides'] == 1
        assert result['metadata']['n_mnar'] == 1

    def test_input_not_modified(self, gappy_data):
        is_missing_at_random(gappy_data)
        assert len(gappy_data['assay']) == 2
        assert 'mnar' not in gappy_data['df'].columns

    def test_not_hdx_data_raises(self):
        with pytest.raises(TypeError):
            is_missing_at_random({'df': None})


class TestImputeHdx:
    def test_zero_imputation_fills_with_zero(self, gappy_data):
        result = impute_hdx(gappy_data, method='zero')

        assay = result['assay']
        assert assay.isna().sum().sum() == 0
        assert (assay.loc['AAKLVSEL2', 'wt'] == 0).all()

    def test_wide_uptake_matches_assay(self, gappy_data):
        result = impute_hdx(gappy_data, method='zero')
        assert result['wide']['X..Deut'].equals(result['assay'])

    def test_median_imputation(self, gappy_data):
        result = impute_hdx(gappy_data, method='median')
        assert result['assay'].isna().sum().sum() == 0

    def test_knn_imputation_fills_missing(self, gappy_data):
        result = impute_hdx(gappy_data, method='knn')
        assert result['assay'].isna().sum().sum() == 0
        assert result['assay'].shape == gappy_data['assay'].shape

    def test_mindet_imputation_below_observed(self, gappy_data):
        result = impute_hdx(gappy_data, method='mindet')

        col = ('iBET', 300.0, 1)
        observed = gappy_data['assay'][col].dropna()
        assert result['assay'].loc['KLVSELFG2', col] <= observed.min()

    def test_imputation_metadata_stored(self, gappy_data):
        result = impute_hdx(gappy_data, method='zero')
        assert result['imputation']['method'] == 'zero'
        assert result['imputation']['n_imputed'] == 13

    def test_method_from_config(self, gappy_data):
        gappy_data['config'] = {'qc_parameters': {'imputation': 'median'}}
        result = impute_hdx(gappy_data)
        assert result['imputation']['method'] == 'median'

    def test_unknown_method_raises(self, gappy_data):
        with pytest.raises(ValueError):
            impute_hdx(gappy_data, method='magic')
