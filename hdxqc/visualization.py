"""
Visualization functions for the HDX-MS QC pipeline.

One plot per diagnostic: missing values, mass error, intensity outliers,
retention time and ion mobility shifts, monotonicity, and mirror plots of
observed versus theoretical spectra.
"""

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from .qc import compute_mass_error, imtime_outliers, intensity_outliers, rtime_outliers
from .statistics import compute_monotone_stats
from .utils import _check_data

# Inlier / outlier colors (ColorBrewer Set2)
_OUTLIER_COLORS = {0: '#66c2a5', 1: '#fc8d62'}


def _finish(fig, save_path):
    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"  > Saved: {save_path.split('/')[-1]}")
    return fig


def _lollipop(ax, values, outliers, threshold, title, xlabel):
    """Horizontal lollipop chart, one stem per peptide."""
    y = np.arange(len(values))
    colors = [_OUTLIER_COLORS[int(o)] for o in outliers]

    ax.hlines(y, 0, values, color=colors, linewidth=1.5)
    ax.scatter(values, y, c=colors, s=30, zorder=3)
    ax.axvline(0, color='black', linewidth=0.8)
    if threshold is not None and np.isfinite(threshold):
        ax.axvline(threshold, color='black', linewidth=1.2)

    ax.set_yticks(y)
    ax.set_yticklabels(values.index, fontsize=6)
    ax.set_xlabel(xlabel, fontsize=12)
    ax.set_ylabel('peptide', fontsize=12)
    ax.set_title(title, fontsize=14, fontweight='bold')
    sns.despine(ax=ax)


def plot_missing(data, save_path=None):
    """
    Heatmap of missing uptake values (peptides x samples).

    Example
    -------
    >>> fig = plot_missing(data, save_path='results/figures/qc/01_missing.pdf')
    """
    _check_data(data)
    assay = data['assay']
    na_mat = assay.isna().astype(int)
    na_mat.columns = [f"{c}_{t:g}_{r}" for c, t, r in assay.columns]

    fig, ax = plt.subplots(figsize=(12, 8))
    sns.heatmap(
        na_mat,
        cmap=['#f0f0f0', '#636363'],
        vmin=0,
        vmax=1,
        cbar_kws={'ticks': [0.25, 0.75]},
        yticklabels=False,
        ax=ax,
    )
    colorbar = ax.collections[0].colorbar
    colorbar.set_ticklabels(['Not Missing', 'Missing'])

    ax.set_title('Missing value plot', fontsize=14, fontweight='bold')
    ax.set_xlabel('Samples', fontsize=12)
    ax.set_ylabel('Peptides', fontsize=12)
    ax.set_xticklabels(ax.get_xticklabels(), rotation=90, fontsize=6)

    pct_missing = na_mat.values.mean() * 100 if na_mat.size else 0.0
    print(f"    Overall: {pct_missing:.1f}% missing values")

    return _finish(fig, save_path)


def plot_mass_error(data, e_centroid=None, t_centroid=None, errors=None, save_path=None):
    """
    Empirical mass error (ppm) against theoretical centroid, one color per peptide.

    Pass `errors` (output of compute_mass_error) to skip recomputing it.
    """
    if errors is None:
        errors = compute_mass_error(data, e_centroid=e_centroid, t_centroid=t_centroid)

    peptides = errors['peptide'].unique()
    palette = sns.color_palette('Set3', n_colors=max(len(peptides), 1))
    color_map = dict(zip(peptides, palette))

    fig, ax = plt.subplots(figsize=(10, 8))
    ax.scatter(
        errors['theoretical_centroid'],
        errors['ppm_error'],
        c=[color_map[p] for p in errors['peptide']],
        s=20,
        alpha=0.8,
    )
    ax.set_xlabel('Theoretical Centroid', fontsize=12)
    ax.set_ylabel('Empirical Error (ppm)', fontsize=12)
    ax.set_title('Mass error', fontsize=14, fontweight='bold')
    sns.despine(ax=ax)

    return _finish(fig, save_path)


def plot_intensity_outliers(data, intensity=None, cook=None, save_path=None):
    """Lollipop plot of Cook's distances with the 2/sqrt(n) threshold."""
    if cook is None:
        cook = intensity_outliers(data, intensity=intensity)
    fitted = cook['cooks_distance'].notna().sum()
    threshold = 2 / np.sqrt(fitted) if fitted else None
    values = cook['cooks_distance'].fillna(0)

    fig, ax = plt.subplots(figsize=(8, max(4, 0.15 * len(values))))
    _lollipop(ax, values, cook['outlier'], threshold,
              title='Intensity outliers', xlabel="cook's distance")

    return _finish(fig, save_path)


def _shift_boxplots(shifts, palette_name, label):
    n = shifts['left']['experiment'].nunique()
    palette = sns.color_palette(palette_name, n_colors=max(n, 1))

    fig, axes = plt.subplots(1, 2, figsize=(14, max(5, 0.3 * n)), sharey=True)
    for ax, side in zip(axes, ('left', 'right')):
        sns.boxplot(
            data=shifts[side],
            x='shift',
            y='experiment',
            hue='experiment',
            palette=palette,
            legend=False,
            ax=ax,
        )
        ax.set_xlabel(f'{label} {side} shift', fontsize=12)
        ax.set_ylabel('Experiment' if side == 'left' else '')
        sns.despine(ax=ax)
    return fig


def plot_rtime_outliers(data, left=None, right=None, search=None, shifts=None, save_path=None):
    """Boxplots of left and right retention time shifts per sample."""
    if shifts is None:
        shifts = rtime_outliers(data, left=left, right=right, search=search)
    fig = _shift_boxplots(shifts, 'Blues', 'RT')
    return _finish(fig, save_path)


def plot_imtime_outliers(data, left=None, right=None, search=None, shifts=None, save_path=None):
    """Boxplots of left and right ion mobility shifts per sample."""
    if shifts is None:
        shifts = imtime_outliers(data, left=left, right=right, search=search)
    fig = _shift_boxplots(shifts, 'Reds', 'IMS')
    return _finish(fig, save_path)


def plot_monotone_stat(data, experiment=None, timepoints=None, mono=None, save_path=None):
    """
    Lollipop plot of the monotonicity statistic, one panel per condition.

    The reference line marks the smallest flagged value.
    """
    if mono is None:
        mono = compute_monotone_stats(data, experiment=experiment, timepoints=timepoints)

    n = len(mono)
    n_peptides = len(next(iter(mono.values())))
    fig, axes = plt.subplots(1, n, figsize=(8 * n, max(4, 0.15 * n_peptides)), squeeze=False)

    for ax, (condition, frame) in zip(axes[0], mono.items()):
        flagged = frame.loc[frame['outlier'] == 1, 'statistic']
        threshold = flagged.min() if len(flagged) else None
        _lollipop(ax, frame['statistic'], frame['outlier'], threshold,
                  title=f'Monotonicity outliers {condition}',
                  xlabel='Deviation from monotone')

    return _finish(fig, save_path)


def plot_spectra_mirror(spectra, index=0, save_path=None):
    """
    Mirror plot of one observed spectrum (top) against its theoretical match.

    Parameters
    ----------
    spectra : dict
        Output from spectra_similarity().
    index : int, optional
        Row of the spectrum to draw (default: 0).
    """
    observed = spectra['observed'].iloc[index]
    matched = spectra['matched'].iloc[index]

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.vlines(observed['mz'], 0, observed['intensity'], color='#1f77b4', linewidth=2, label='observed')
    ax.vlines(matched['mz'], 0, -np.asarray(matched['intensity']), color='#d62728', linewidth=2,
              label='theoretical')
    ax.axhline(0, color='black', linewidth=0.8)

    score = observed['score']
    score_label = 'NA' if score != score else f"{score:.3f}"
    ax.set_title(
        f"{observed['sequence']} z={observed['charge']}  score={score_label}",
        fontsize=14, fontweight='bold',
    )
    ax.set_xlabel('m/z', fontsize=12)
    ax.set_ylabel('Relative intensity', fontsize=12)
    ax.legend(fontsize=10, loc='best')
    sns.despine(ax=ax)

    return _finish(fig, save_path)
