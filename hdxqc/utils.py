"""
Utility functions for the HDX-MS QC pipeline.

Internal helpers for configuration loading, column naming, design
validation, directory management, and data serialization.
"""

import os
import pickle

import numpy as np
import pandas as pd
import yaml

# Sentinels used by HDExaminer exports
MISSING_TOKEN = 'n/a'
FD_TOKEN = 'FD'

# Column names of the HDExaminer export and of the derived window fields.
# Override any of them through the `data_columns` section of the config.
DEFAULT_COLUMNS = {
    'sequence': 'Sequence',
    'charge': 'Charge',
    'state': 'Protein.State',
    'time': 'Deut.Time',
    'uptake': 'X..Deut',
    'uptake_raw': 'Deut..',
    'search_rt': 'Search.RT',
    'actual_rt': 'Actual.RT',
    'spectra': 'X..Spectra',
    'search_ims': 'Search.IMS',
    'ims_range': 'IMS.Range',
    'intensity': 'Max.Inty',
    'exp_centroid': 'Exp.Cent',
    'theor_centroid': 'Theor.Cent',
    'score': 'Score',
    'confidence': 'Confidence',
    'start': 'Start',
    'end': 'End',
    'left_rt': 'leftRT',
    'right_rt': 'rightRT',
    'left_ims': 'leftIMS',
    'right_ims': 'rightIMS',
}

# Per-sample fields carried into the wide table, in output order
WIDE_FIELDS = [
    'uptake', 'search_rt', 'actual_rt', 'spectra', 'search_ims', 'ims_range',
    'intensity', 'exp_centroid', 'theor_centroid', 'score', 'confidence',
    'left_rt', 'right_rt', 'left_ims', 'right_ims', 'start', 'end',
]

WIDE_LEVELS = ['field', 'condition', 'timepoint', 'replicate']


def _load_config(config_path):
    """Load YAML config file."""
    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def _resolve_columns(config=None):
    """Merge `data_columns` overrides from the config into the defaults."""
    columns = dict(DEFAULT_COLUMNS)
    if config:
        overrides = config.get('data_columns') or {}
        unknown = set(overrides) - set(DEFAULT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown data_columns keys: {sorted(unknown)}")
        columns.update(overrides)
    return columns


def _create_output_dirs(base_dir):
    """Create base_dir with figures/, figures/qc/ (diagnostic plots) and tables/."""
    figures = os.path.join(base_dir, 'figures')
    dirs = {
        'base': base_dir,
        'figures': figures,
        'qc': os.path.join(figures, 'qc'),
        'tables': os.path.join(base_dir, 'tables'),
    }
    for path in dirs.values():
        os.makedirs(path, exist_ok=True)
    return dirs


def _check_data(data):
    """Raise if `data` is not an HDX data dictionary."""
    if not isinstance(data, dict) or 'assay' not in data or 'wide' not in data:
        raise TypeError("Not an HDX data dictionary (expected output of prep_hdx or build_hdx_data)")


def _condition_columns(frame, condition):
    """Sample columns of `frame` that belong to one condition."""
    mask = frame.columns.get_level_values('condition') == condition
    return frame.columns[mask]


def _field_by_name(data, name):
    """Per-sample wide field as floats, e.g. _field_by_name(data, 'Max.Inty')."""
    fields = data['wide'].columns.get_level_values('field')
    if name not in fields:
        raise ValueError(f"Field '{name}' not found in the wide table")
    return data['wide'][name].astype(float)


def _resolve_design(data, experiment=None, timepoints=None):
    """
    Return validated (experiment, timepoints).

    Falls back to data['design'] when arguments are omitted. Every condition
    must exist in the assay and own exactly len(timepoints) sample columns.
    """
    design = data.get('design') or {}
    if experiment is None:
        experiment = design.get('experiment')
    if timepoints is None:
        timepoints = design.get('timepoints')

    if experiment is None:
        raise ValueError("Must provide the experimental conditions")
    if timepoints is None:
        raise ValueError("Must indicate the timepoints")

    if isinstance(experiment, str):
        experiment = [experiment]
    experiment = list(experiment)
    timepoints = np.asarray(timepoints, dtype=float)

    assay = data['assay']
    for condition in experiment:
        cols = _condition_columns(assay, condition)
        if len(cols) == 0:
            raise ValueError(f"Condition '{condition}' not found in the assay columns")
        if len(cols) != len(timepoints):
            raise ValueError(
                f"timepoints has {len(timepoints)} entries but condition "
                f"'{condition}' has {len(cols)} sample columns"
            )

    return experiment, timepoints


def _qc_parameter(data, key, default):
    """Value of `qc_parameters.<key>` in the config, or `default` when unset."""
    params = (data.get('config') or {}).get('qc_parameters') or {}
    value = params.get(key)
    return default if value is None else value


def _sample_label(condition, timepoint, replicate):
    """Readable label for one sample column."""
    return f"{condition}_{timepoint:g}_{replicate}"


def _checkpoint_summary(data):
    """Console lines describing what an HDX data dictionary holds."""
    lines = []
    metadata = data.get('metadata') or {}
    if metadata:
        lines.append(f"  Peptides:    {metadata.get('n_peptides')}")
        lines.append(f"  Samples:     {metadata.get('n_samples')}")
        lines.append(f"  Conditions:  {', '.join(map(str, metadata.get('conditions', [])))}")
        if 'n_fd_rows' in metadata:
            lines.append(f"  FD rows:     {metadata['n_fd_rows']}")
    design = data.get('design') or {}
    if design.get('timepoints') is not None:
        timepoints = sorted(set(float(t) for t in design['timepoints']))
        lines.append(f"  Timepoints:  {', '.join(f'{t:g}s' for t in timepoints)}")

    stages = []
    if isinstance(data.get('df'), pd.DataFrame) and 'mnar' in data['df'].columns:
        stages.append(f"MNAR classified ({int(metadata.get('n_mnar', 0))} flagged)")
    if 'imputation' in data:
        stages.append(f"imputed ({data['imputation']['method']})")
    if stages:
        lines.append(f"  Stages:      {'; '.join(stages)}")
    return lines


def save_data(data, filename=None):
    """
    Pickle an HDX data dictionary so a later session can pick up the QC.

    Parameters
    ----------
    data : dict
        HDX data dictionary (output from prep_hdx, is_missing_at_random,
        impute_hdx, ...).
    filename : str, optional
        Target path. Defaults to hdx_checkpoint.pkl in the configured
        output_dir.

    Returns
    -------
    str
        Path of the checkpoint.

    Example
    -------
    >>> data = impute_hdx(is_missing_at_random(prep_hdx('config/hdx_experiment.yaml')))
    >>> save_data(data)  # results/hdx_checkpoint.pkl
    """
    if filename is None:
        output_dir = data['config']['data_paths']['output_dir']
        filename = os.path.join(output_dir, 'hdx_checkpoint.pkl')

    with open(filename, 'wb') as f:
        pickle.dump(data, f)

    size_mb = os.path.getsize(filename) / (1024 * 1024)

    print(f"\n{'='*80}")
    print(f"HDX CHECKPOINT SAVED")
    print(f"{'='*80}")
    print(f"File: {filename} ({size_mb:.1f} MB)")
    for line in _checkpoint_summary(data):
        print(line)
    print(f"\nResume with: data = hdxqc.load_data('{filename}')")
    print(f"{'='*80}\n")

    return filename


def load_data(filepath):
    """
    Load an HDX checkpoint written by save_data().

    Example
    -------
    >>> data = load_data('results/data_after_prep.pkl')
    >>> data = is_missing_at_random(data)
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"HDX checkpoint not found: {filepath}")

    with open(filepath, 'rb') as f:
        data = pickle.load(f)

    size_mb = os.path.getsize(filepath) / (1024 * 1024)

    print(f"\n{'='*80}")
    print(f"HDX CHECKPOINT LOADED")
    print(f"{'='*80}")
    print(f"File: {filepath} ({size_mb:.1f} MB)")
    for line in _checkpoint_summary(data):
        print(line)
    print(f"{'='*80}\n")

    return data
