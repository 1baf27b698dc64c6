"""
Summary reporting for the HDX-MS QC pipeline.

Runs every diagnostic, saves the QC plots, and merges all outlier flags
into one table with a row per peptide.
"""

import os

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .qc import compute_mass_error, imtime_outliers, intensity_outliers, rtime_outliers
from .statistics import (
    charge_correlation,
    compatible_uptake,
    compute_monotone_stats,
    replicate_correlation,
    replicate_outlier,
)
from .utils import _check_data, _qc_parameter, _resolve_design
from .visualization import (
    plot_imtime_outliers,
    plot_intensity_outliers,
    plot_mass_error,
    plot_missing,
    plot_monotone_stat,
    plot_rtime_outliers,
)

SUMMARY_COLUMNS = [
    'mnar',
    'intensity_outlier',
    'rt_outlier',
    'ims_outlier',
    'monotonicity_outlier',
    'replicate_variance_outlier',
    'replicate_skew_outlier',
    'uptake_compatibility_outlier',
]


def _any_flag(frames, index):
    """Collapse long outlier tables to one 0/1 flag per peptide."""
    flags = []
    for frame in frames:
        if 'peptide' in frame.columns:
            flags.append(frame.groupby('peptide')['outlier'].max())
        else:
            flags.append(frame['outlier'])
    combined = pd.concat(flags, axis=1).max(axis=1)
    combined = combined.groupby(level=0).max()
    return combined.reindex(index).fillna(0).astype(int)


def _min_off_diagonal(matrix):
    values = matrix.to_numpy(dtype=float)
    off = values[~np.eye(len(values), dtype=bool)]
    off = off[np.isfinite(off)]
    return off.min() if len(off) else np.nan


def quality_control(data, results, save_path=None):
    """
    Merge diagnostic outputs into one QC table.

    Per-sample and per-condition flags are reduced with "any", so a peptide
    is flagged when at least one of its samples or conditions is.

    Parameters
    ----------
    data : dict
        HDX data dictionary the diagnostics were run on.
    results : dict
        Diagnostic outputs keyed by 'intensity', 'rtime', 'imtime',
        'monotonicity', 'replicate_variance', 'replicate_skew',
        'compatible_uptake', 'mass_error', 'charge_correlation'. Missing
        keys are left out of the table.
    save_path : str, optional
        Write the table as CSV.

    Returns
    -------
    pd.DataFrame
        Indexed by peptide, with Sequence, Charge, one 0/1 column per
        diagnostic, max_abs_ppm_error and min_charge_correlation.

    Example
    -------
    >>> summary = quality_control(data, qc['results'], 'results/tables/qc.csv')
    >>> summary[summary['rt_outlier'] == 1]
    """
    _check_data(data)
    index = data['assay'].index
    df = data['df'].reindex(index)

    summary = pd.DataFrame(index=index)
    for col in ('Sequence', 'Charge'):
        if col in df.columns:
            summary[col] = df[col]

    summary['mnar'] = df['mnar'].fillna(0).astype(int) if 'mnar' in df.columns else 0

    if 'intensity' in results:
        summary['intensity_outlier'] = _any_flag([results['intensity']], index)
    for key, column in (('rtime', 'rt_outlier'), ('imtime', 'ims_outlier')):
        if key in results:
            summary[column] = _any_flag(results[key].values(), index)
    for key, column in (('monotonicity', 'monotonicity_outlier'),
                        ('replicate_variance', 'replicate_variance_outlier'),
                        ('replicate_skew', 'replicate_skew_outlier')):
        if key in results:
            summary[column] = _any_flag(results[key].values(), index)
    if 'compatible_uptake' in results:
        summary['uptake_compatibility_outlier'] = index.isin(
            list(results['compatible_uptake'])
        ).astype(int)

    if 'mass_error' in results:
        errors = results['mass_error']
        summary['max_abs_ppm_error'] = (
            errors['ppm_error'].abs().groupby(errors['peptide']).max().reindex(index)
        )
    if 'charge_correlation' in results and 'Sequence' in summary.columns:
        per_sequence = {}
        for by_sequence in results['charge_correlation'].values():
            for sequence, matrix in by_sequence.items():
                value = _min_off_diagonal(matrix)
                if np.isfinite(value):
                    per_sequence.setdefault(sequence, []).append(value)
        minima = {sequence: min(values) for sequence, values in per_sequence.items()}
        summary['min_charge_correlation'] = summary['Sequence'].map(minima).astype(float)

    flag_cols = [c for c in SUMMARY_COLUMNS if c in summary.columns]
    summary['n_flags'] = summary[flag_cols].sum(axis=1).astype(int)

    if save_path:
        summary.to_csv(save_path)
        print(f"  > Saved: {os.path.basename(save_path)}")

    return summary


def _has_fields(data, *names):
    fields = set(data['wide'].columns.get_level_values('field'))
    return all(name in fields for name in names)


def _save_plot(plot_func, qc_dir, filename, *args, **kwargs):
    save_path = os.path.join(qc_dir, filename) if qc_dir else None
    fig = plot_func(*args, save_path=save_path, **kwargs)
    plt.close(fig)


def qc_hdx(data, experiment=None, timepoints=None, overlap=None, make_plots=True, output_suffix=''):
    """
    Run every QC diagnostic and summarise the flags.

    This function:
    1. Computes mass errors
    2. Detects intensity outliers (Cook's distance)
    3. Detects retention time and ion mobility window outliers
    4. Scores monotonicity of uptake over time
    5. Correlates charge states of the same peptide
    6. Checks uptake compatibility of overlapping peptides
    7. Flags replicate variance and skew outliers
    8. Saves plots and the summary table

    Parameters
    ----------
    data : dict
        Output from impute_hdx().
    experiment, timepoints : optional
        Design vectors (default: data['design']).
    overlap : int, optional
        Residue tolerance for compatible_uptake(). Defaults to
        qc_parameters.overlap from the config, else 5.
    make_plots : bool, optional
        Save diagnostic plots to results/figures/qc/ (default: True).
    output_suffix : str, optional
        Suffix for output filenames, e.g. '_after_filter'.

    Returns
    -------
    dict
        - 'summary': pd.DataFrame from quality_control()
        - 'results': dict of every diagnostic output

    Example
    -------
    >>> data = prep_hdx('config/hdx_experiment.yaml')
    >>> data = is_missing_at_random(data)
    >>> data = impute_hdx(data)
    >>> qc = qc_hdx(data)
    >>> qc['summary'].query('n_flags > 0')
    """
    _check_data(data)
    experiment, timepoints = _resolve_design(data, experiment, timepoints)
    if overlap is None:
        overlap = _qc_parameter(data, 'overlap', 5)

    print("\n" + "="*80)
    print("HDX QUALITY CONTROL")
    if output_suffix:
        print(f"Output suffix: {output_suffix}")
    print("="*80)

    columns = data['columns']
    results = {}

    print(f"\n[1/8] Computing mass error...")
    if _has_fields(data, columns['exp_centroid'], columns['theor_centroid']):
        results['mass_error'] = compute_mass_error(data)
        print(f"  Max |ppm error|: {results['mass_error']['ppm_error'].abs().max():.2f}")
    else:
        print(f"  Warning: centroid fields not found, skipping")

    print(f"\n[2/8] Detecting intensity outliers...")
    if _has_fields(data, columns['intensity']):
        results['intensity'] = intensity_outliers(data)
        print(f"  Flagged: {int(results['intensity']['outlier'].sum())}")
    else:
        print(f"  Warning: intensity field '{columns['intensity']}' not found, skipping")

    print(f"\n[3/8] Detecting retention time and ion mobility outliers...")
    for key, left, right, label in (('rtime', 'left_rt', 'right_rt', 'RT'),
                                    ('imtime', 'left_ims', 'right_ims', 'IMS')):
        if _has_fields(data, columns[left], columns[right]):
            func = rtime_outliers if key == 'rtime' else imtime_outliers
            results[key] = func(data)
            n_flagged = sum(int(frame['outlier'].sum()) for frame in results[key].values())
            print(f"  {label}: {n_flagged} flagged window boundaries")
        else:
            print(f"  Warning: {label} window fields not found, skipping")

    print(f"\n[4/8] Scoring monotonicity...")
    results['monotonicity'] = compute_monotone_stats(data, experiment, timepoints)
    for condition, frame in results['monotonicity'].items():
        print(f"  {condition}: {int(frame['outlier'].sum())} flagged")

    print(f"\n[5/8] Correlating charge states...")
    results['charge_correlation'] = charge_correlation(data, experiment, timepoints)

    print(f"\n[6/8] Checking uptake compatibility (overlap={overlap})...")
    if {'Start', 'End'} <= set(data['df'].columns):
        results['compatible_uptake'] = compatible_uptake(data, overlap, experiment, timepoints)
        print(f"  Flagged: {len(results['compatible_uptake'])} peptides")
    else:
        print(f"  Warning: Start/End not available, skipping")

    print(f"\n[7/8] Checking replicate variability...")
    results['replicate_variance'] = replicate_correlation(data, experiment, timepoints)
    results['replicate_skew'] = replicate_outlier(data, experiment, timepoints)

    print(f"\n[8/8] Saving outputs...")
    output_dirs = data.get('output_dirs')
    if make_plots and len(data['assay']) == 0:
        print(f"  Warning: no peptides left, skipping plots")
    elif make_plots:
        qc_dir = output_dirs['qc'] if output_dirs else None
        _save_plot(plot_missing, qc_dir, f'01_missing_values{output_suffix}.pdf', data)
        if 'mass_error' in results:
            _save_plot(plot_mass_error, qc_dir, f'02_mass_error{output_suffix}.pdf', data,
                       errors=results['mass_error'])
        if 'intensity' in results:
            _save_plot(plot_intensity_outliers, qc_dir, f'03_intensity_outliers{output_suffix}.pdf',
                       data, cook=results['intensity'])
        if 'rtime' in results:
            _save_plot(plot_rtime_outliers, qc_dir, f'04_rt_outliers{output_suffix}.pdf', data,
                       shifts=results['rtime'])
        if 'imtime' in results:
            _save_plot(plot_imtime_outliers, qc_dir, f'05_ims_outliers{output_suffix}.pdf', data,
                       shifts=results['imtime'])
        _save_plot(plot_monotone_stat, qc_dir, f'06_monotonicity{output_suffix}.pdf', data,
                   mono=results['monotonicity'])

    save_path = None
    if output_dirs:
        save_path = os.path.join(output_dirs['tables'], f'qc_summary{output_suffix}.csv')
    summary = quality_control(data, results, save_path=save_path)

    print("\n" + "="*80)
    print("QUALITY CONTROL COMPLETE")
    print("="*80)
    print(f"\nPeptides:                {len(summary)}")
    print(f"Peptides with any flag:  {int((summary['n_flags'] > 0).sum())}")
    print("\n" + "="*80 + "\n")

    return {'summary': summary, 'results': results}
