"""
Instrument-level quality control metrics for the HDX-MS QC pipeline.

Mass error of centroids, intensity outliers from the mean-variance trend,
and retention time / ion mobility window drift.
"""

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.stats.outliers_influence import OLSInfluence

from .utils import _check_data, _field_by_name, _sample_label


def _to_long(frame, value_name):
    """Flatten a peptides x samples frame, peptide-major."""
    n_peptides, n_samples = frame.shape
    cols = frame.columns
    return pd.DataFrame({
        'peptide': np.repeat(frame.index.values, n_samples),
        'condition': np.tile(cols.get_level_values('condition').values, n_peptides),
        'timepoint': np.tile(cols.get_level_values('timepoint').values, n_peptides),
        'replicate': np.tile(cols.get_level_values('replicate').values, n_peptides),
        value_name: frame.values.ravel(),
    })


def compute_mass_error(data, e_centroid=None, t_centroid=None):
    """
    Empirical versus theoretical centroid mass error in ppm.

    Parameters
    ----------
    data : dict
        HDX data dictionary.
    e_centroid : str, optional
        Experimental centroid field (default: data['columns']['exp_centroid']).
    t_centroid : str, optional
        Theoretical centroid field (default: data['columns']['theor_centroid']).

    Returns
    -------
    pd.DataFrame
        One row per (peptide, sample) with columns theoretical_centroid,
        ppm_error, peptide, condition, timepoint, replicate.

    Example
    -------
    >>> errors = compute_mass_error(data)
    >>> errors['ppm_error'].abs().max()
    """
    _check_data(data)
    e_centroid = e_centroid or data['columns']['exp_centroid']
    t_centroid = t_centroid or data['columns']['theor_centroid']

    experimental = _field_by_name(data, e_centroid)
    theoretical = _field_by_name(data, t_centroid)

    delta_ppm = (experimental - theoretical) / theoretical * 1e6

    errors = _to_long(delta_ppm, 'ppm_error')
    errors.insert(0, 'theoretical_centroid', theoretical.values.ravel())
    errors = errors[['theoretical_centroid', 'ppm_error', 'peptide',
                     'condition', 'timepoint', 'replicate']]
    return errors


def intensity_outliers(data, intensity=None):
    """
    Intensity based outliers from the mean-variance trend.

    Regresses log(variance) on log(mean) of the maximum intensity across
    samples and flags peptides whose Cook's distance exceeds 2/sqrt(n).

    Parameters
    ----------
    data : dict
        HDX data dictionary.
    intensity : str, optional
        Intensity field (default: data['columns']['intensity'], 'Max.Inty').

    Returns
    -------
    pd.DataFrame
        Indexed by peptide with columns cooks_distance and outlier (0/1).
        Peptides with non-finite log statistics are left out of the fit
        and get a NaN distance.
    """
    _check_data(data)
    intensity = intensity or data['columns']['intensity']
    intensity_mat = _field_by_name(data, intensity)

    with np.errstate(divide='ignore', invalid='ignore'):
        log_var = np.log(intensity_mat.var(axis=1, ddof=1))
        log_mean = np.log(intensity_mat.mean(axis=1))

    usable = np.isfinite(log_var) & np.isfinite(log_mean)
    n = int(usable.sum())
    distance = pd.Series(np.nan, index=intensity_mat.index)

    if n < 3:
        print(f"  Warning: only {n} peptides with usable intensities, skipping Cook's distance")
        distance[usable] = 0.0
    else:
        y = log_var[usable].values
        X = sm.add_constant(log_mean[usable].values, has_constant='add')
        results = sm.OLS(y, X).fit()
        # exact fit: no point has influence
        if np.allclose(results.resid, 0, atol=1e-8 * max(1.0, np.abs(y).max())):
            distance[usable] = 0.0
        else:
            distance[usable] = OLSInfluence(results).cooks_distance[0]

    threshold = 2 / np.sqrt(n) if n > 0 else np.inf
    outliers = pd.DataFrame({
        'cooks_distance': distance,
        'outlier': (distance > threshold).astype(int),
    })
    outliers.index.name = 'peptide'
    return outliers


def _flag_iqr_outliers(long, value_col, group_col='experiment'):
    """Flag |value| > 1.5 * IQR of its group."""
    grouped = long.groupby(group_col, sort=False)[value_col]
    q1 = grouped.transform(lambda s: s.quantile(0.25))
    q3 = grouped.transform(lambda s: s.quantile(0.75))
    long = long.copy()
    long['outlier'] = (long[value_col].abs() > 1.5 * (q3 - q1)).astype(int)
    return long


def _window_shift(data, field, search):
    window = _field_by_name(data, field)
    shift = window.sub(window.median(axis=1), axis=0)

    long = _to_long(shift, 'shift')
    long.insert(1, 'experiment', [
        _sample_label(c, t, r)
        for c, t, r in zip(long['condition'], long['timepoint'], long['replicate'])
    ])
    if search is not None:
        long['search'] = _field_by_name(data, search).values.ravel()

    return _flag_iqr_outliers(long, 'shift')


def _window_outliers(data, left, right, search):
    _check_data(data)
    fields = set(data['wide'].columns.get_level_values('field'))
    if search is not None and search not in fields:
        print(f"  Warning: search field '{search}' not found, omitting it")
        search = None
    return {
        'left': _window_shift(data, left, search),
        'right': _window_shift(data, right, search),
    }


def rtime_outliers(data, left=None, right=None, search=None):
    """
    Retention time based outliers.

    For each boundary side, subtracts each peptide's median window position
    across samples and flags shifts whose absolute value exceeds 1.5 times
    the interquartile range of shifts within the same sample.

    Parameters
    ----------
    data : dict
        HDX data dictionary.
    left, right : str, optional
        Left/right retention time window fields ('leftRT', 'rightRT').
    search : str, optional
        Search retention time field ('Search.RT'), carried for reference.

    Returns
    -------
    dict
        {'left': pd.DataFrame, 'right': pd.DataFrame}, each with peptide,
        experiment, condition, timepoint, replicate, shift, outlier.
    """
    columns = data['columns'] if isinstance(data, dict) and 'columns' in data else {}
    return _window_outliers(
        data,
        left or columns.get('left_rt', 'leftRT'),
        right or columns.get('right_rt', 'rightRT'),
        search or columns.get('search_rt', 'Search.RT'),
    )


def imtime_outliers(data, left=None, right=None, search=None):
    """
    Ion mobility time based outliers.

    Same procedure as rtime_outliers() applied to the ion mobility window
    fields ('leftIMS', 'rightIMS', 'Search.IMS').
    """
    columns = data['columns'] if isinstance(data, dict) and 'columns' in data else {}
    return _window_outliers(
        data,
        left or columns.get('left_ims', 'leftIMS'),
        right or columns.get('right_ims', 'rightIMS'),
        search or columns.get('search_ims', 'Search.IMS'),
    )
