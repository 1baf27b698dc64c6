"""
Uptake-based statistics for the HDX-MS QC pipeline.

Monotonicity of uptake over time, charge state correlation, consistency of
uptake between overlapping peptides, and replicate variability.
"""

import numbers

import numpy as np
import pandas as pd

from .utils import _check_data, _condition_columns, _resolve_design


def _by_timepoint(data, condition, timepoints):
    """Uptake of one condition grouped by timepoint (groups are sample columns)."""
    assay = data['assay']
    values = assay[_condition_columns(assay, condition)]
    values = pd.DataFrame(values.to_numpy(dtype=float), index=assay.index,
                          columns=pd.Index(timepoints, name='timepoint'))
    return values.T.groupby(level='timepoint')


def _outlier_frame(statistic, outlier):
    frame = pd.DataFrame({'statistic': statistic, 'outlier': outlier.astype(int)})
    frame.index.name = 'peptide'
    return frame


def _monotone_statistic(means):
    """
    Rank displacement between mean uptake and time, both descending.

    Ties in uptake are ordered towards the later timepoint so that a
    plateau does not count as a violation.
    """
    n = len(means)
    position = np.arange(n)
    order_means = np.lexsort((-position, -np.asarray(means, dtype=float)))
    order_times = position[::-1]
    return int(np.abs(order_means - order_times).sum())


def _cumulative_threshold(statistic, level=0.98):
    """Smallest value whose cumulative frequency exceeds `level`, NaN when empty."""
    if len(statistic) == 0:
        return np.nan
    freq = statistic.value_counts(normalize=True).sort_index()
    cumulative = freq.cumsum().to_numpy()
    return freq.index[int(np.argmax(cumulative > level))]


def compute_monotone_stats(data, experiment=None, timepoints=None):
    """
    Monotonicity based outlier detection.

    Deuterium uptake should not decrease over time. For each condition and
    peptide, the mean uptake per timepoint is ranked and compared to the
    ranking of the timepoints; a perfectly monotone increase scores zero.
    Peptides at or above the value where the cumulative frequency of the
    statistic first exceeds 0.98 are flagged (a score of zero never is).

    Parameters
    ----------
    data : dict
        HDX data dictionary.
    experiment : list of str, optional
        Conditions (default: data['design']['experiment']).
    timepoints : array-like, optional
        Timepoint of each sample column of a condition
        (default: data['design']['timepoints']).

    Returns
    -------
    dict
        {condition: pd.DataFrame indexed by peptide with statistic, outlier}

    Example
    -------
    >>> timepoints = np.repeat([0, 15, 60, 600, 3600, 14000], 3)
    >>> mono = compute_monotone_stats(data, ['wt', 'iBET'], timepoints)
    >>> mono['wt'].query('outlier == 1')
    """
    _check_data(data)
    experiment, timepoints = _resolve_design(data, experiment, timepoints)

    results = {}
    for condition in experiment:
        means = _by_timepoint(data, condition, timepoints).mean().T
        statistic = pd.Series(
            [_monotone_statistic(row) for row in means.to_numpy()],
            index=means.index,
            dtype=int,
        )
        threshold = _cumulative_threshold(statistic)
        outlier = (statistic >= threshold) & (statistic > 0)
        results[condition] = _outlier_frame(statistic, outlier)

    return results


def charge_correlation(data, experiment=None, timepoints=None):
    """
    Correlation of uptake between charge states of the same peptide.

    Charge states should have correlated incorporation, though not
    necessarily identical. The zero timepoint is excluded.

    Returns
    -------
    dict
        {condition: {sequence: pd.DataFrame}}. Each matrix is indexed by
        charge 1..max observed charge; charges a peptide was not observed
        at are NaN.
    """
    _check_data(data)
    experiment, timepoints = _resolve_design(data, experiment, timepoints)

    assay = data['assay']
    peptides = data['df'].loc[assay.index]
    counts = peptides['Sequence'].value_counts()
    duplicated = [s for s in pd.unique(peptides['Sequence']) if counts[s] > 1]

    results = {condition: {} for condition in experiment}
    if not duplicated:
        print("  No peptides observed at more than one charge state")
        return results

    charge_slots = pd.Index(range(1, int(peptides['Charge'].max()) + 1), name='charge')
    rows = peptides['Sequence'].isin(duplicated).to_numpy()
    sequences = peptides['Sequence'].to_numpy()[rows]
    charges = peptides['Charge'].to_numpy()[rows]

    for condition in experiment:
        values = assay.loc[rows, _condition_columns(assay, condition)].to_numpy(dtype=float)
        n_rows, n_cols = values.shape
        # column-major, so replicates are numbered in sample order
        long = pd.DataFrame({
            'uptake': values.ravel(order='F'),
            'timepoint': np.repeat(timepoints, n_rows),
            'charge': np.tile(charges, n_cols),
            'peptide': np.tile(sequences, n_cols),
        })
        long['replicate'] = long.groupby(['timepoint', 'charge', 'peptide']).cumcount() + 1
        long = long[long['timepoint'] != 0]

        table = long.set_index(['timepoint', 'replicate', 'peptide', 'charge'])['uptake'].unstack('charge')

        for sequence in duplicated:
            by_charge = table.xs(sequence, level='peptide').dropna(axis=1, how='all')
            corr = by_charge.corr()
            results[condition][sequence] = corr.reindex(index=charge_slots, columns=charge_slots)

    return results


def compatible_uptake(data, overlap=5, experiment=None, timepoints=None):
    """
    Check that uptake is compatible between overlapping peptides.

    Two peptides of the same charge that differ by fewer than `overlap`
    residues can differ in uptake by at most the number of residues that
    are not shared. Larger differences point to contamination,
    misidentification or differential back-exchange.

    Parameters
    ----------
    data : dict
        HDX data dictionary; data['df'] must hold Start and End.
    overlap : int or float, optional
        Maximum number of non-shared residues for two peptides to be
        compared (default: 5).
    experiment, timepoints : optional
        Design vectors (default: data['design']).

    Returns
    -------
    dict
        {peptide: set of (condition, timepoint)} for every peptide that
        violates the bound against one of its neighbours.
    """
    _check_data(data)
    if isinstance(overlap, bool) or not isinstance(overlap, numbers.Number):
        raise TypeError("overlap must be a numeric value")
    experiment, timepoints = _resolve_design(data, experiment, timepoints)

    assay = data['assay']
    peptides = data['df'].loc[assay.index]
    for col in ('Start', 'End'):
        if col not in peptides.columns or peptides[col].isna().any():
            raise ValueError(f"compatible_uptake needs a complete '{col}' column in data['df']")

    columns = [col for condition in experiment for col in _condition_columns(assay, condition)]
    labels = [(condition, float(tp)) for condition in experiment for tp in timepoints]
    values = assay[columns].to_numpy(dtype=float)

    starts = peptides['Start'].to_numpy(dtype=int)
    ends = peptides['End'].to_numpy(dtype=int)
    lengths = ends - starts + 1
    shared = np.clip(
        np.minimum(ends[:, None], ends[None, :]) - np.maximum(starts[:, None], starts[None, :]) + 1,
        0, None,
    )
    not_shared = np.maximum(lengths[:, None], lengths[None, :]) - shared
    charges = peptides['Charge'].to_numpy()
    names = assay.index.to_numpy()

    flagged = {}
    for j in range(len(names)):
        neighbours = (not_shared[j] < overlap) & (charges == charges[j])
        neighbours[j] = False
        if not neighbours.any():
            continue

        difference = np.abs(values[neighbours] - values[j])
        violation = difference > not_shared[j, neighbours][:, None]

        for name, row in zip(names[neighbours], violation):
            if row.any():
                flagged.setdefault(name, set()).update(labels[i] for i in np.flatnonzero(row))

    return flagged


def _replicate_statistic(data, experiment, timepoints, summarise, quantile):
    statistics = {}
    for condition in experiment:
        grouped = _by_timepoint(data, condition, timepoints)
        per_timepoint = summarise(grouped).T
        statistics[condition] = per_timepoint.max(axis=1).fillna(0).clip(lower=0)

    pooled = np.concatenate([s.to_numpy(dtype=float) for s in statistics.values()])
    threshold = np.nanquantile(pooled, quantile) if pooled.size else np.nan

    return {
        condition: _outlier_frame(statistic, statistic > threshold)
        for condition, statistic in statistics.items()
    }


def replicate_correlation(data, experiment=None, timepoints=None):
    """
    Replicate variability check.

    The statistic is the largest within-timepoint variance of uptake for
    each peptide (floored at zero). Peptides above the 95th percentile of
    the statistic over all conditions are flagged.

    Returns
    -------
    dict
        {condition: pd.DataFrame indexed by peptide with statistic, outlier}
    """
    _check_data(data)
    experiment, timepoints = _resolve_design(data, experiment, timepoints)
    return _replicate_statistic(
        data, experiment, timepoints,
        summarise=lambda grouped: grouped.var(),
        quantile=0.95,
    )


def replicate_outlier(data, experiment=None, timepoints=None):
    """
    Replicate outlier check.

    The statistic is the largest within-timepoint gap between mean and
    median uptake, which grows when a single replicate is off. Peptides
    above the 99th percentile over all conditions are flagged.
    """
    _check_data(data)
    experiment, timepoints = _resolve_design(data, experiment, timepoints)
    return _replicate_statistic(
        data, experiment, timepoints,
        summarise=lambda grouped: (grouped.mean() - grouped.median()).abs(),
        quantile=0.99,
    )
