"""
Data preparation functions for the HDX-MS QC pipeline.

Handles loading HDExaminer exports, cleaning compound fields, splitting off
fully deuterated controls, replicate numbering, and pivoting to the wide
peptide x sample layout used by every diagnostic.
"""

import os
import re

import numpy as np
import pandas as pd

from .utils import (
    FD_TOKEN,
    MISSING_TOKEN,
    WIDE_FIELDS,
    WIDE_LEVELS,
    _condition_columns,
    _create_output_dirs,
    _load_config,
    _resolve_columns,
    _resolve_design,
    save_data,
)

# Fields that stay as "a-b" strings in the wide table
_RANGE_FIELDS = ('actual_rt', 'ims_range')

_TIME_UNITS = {'s': 1.0, 'm': 60.0, 'h': 3600.0}
_TIME_PATTERN = re.compile(r'^\s*([0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)\s*([smh]?)\s*$')


def _parse_time(value):
    """Convert an HDExaminer deuteration time such as '30s' to seconds."""
    if pd.isna(value):
        return np.nan
    match = _TIME_PATTERN.match(str(value))
    if match is None:
        raise ValueError(f"Cannot parse deuteration time '{value}'")
    number, unit = match.groups()
    return float(number) * _TIME_UNITS[unit or 's']


def _split_range(series):
    """Split 'left-right' strings into two float columns."""
    parts = series.astype(str).str.split('-', n=1, expand=True)
    if parts.shape[1] == 1:
        parts[1] = np.nan
    left = pd.to_numeric(parts[0], errors='coerce')
    right = pd.to_numeric(parts[1], errors='coerce')
    missing = series.isna()
    left[missing] = np.nan
    right[missing] = np.nan
    return left.values, right.values


def _is_blank(series):
    """Cells that are present but empty."""
    return series.notna() & (series.astype(str).str.strip() == '')


def process_hde(raw, protein_states=None, columns=None):
    """
    Curate an HDExaminer export into a wide peptide table.

    This function:
    1. Replaces the 'n/a' token with missing values
    2. Splits retention time and IMS ranges ("a-b") into left/right windows
    3. Segregates fully deuterated (FD) rows
    4. Converts deuteration times to seconds
    5. Numbers replicates within (time, sequence, state, charge)
    6. Sets blank uptake values to zero
    7. Renames protein states
    8. Pivots to one row per (sequence, charge)

    Parameters
    ----------
    raw : pd.DataFrame
        HDExaminer "All Results" table, one row per peptide, charge, state,
        timepoint and replicate. Read it with ``dtype=str`` and
        ``keep_default_na=False`` so blank uptake cells survive as ''.
    protein_states : list of str, optional
        Labels for the protein states in order of appearance. Defaults to
        'Condition 1', 'Condition 2', ...
    columns : dict, optional
        Column names, see ``hdxqc.utils.DEFAULT_COLUMNS``.

    Returns
    -------
    dict
        - 'wide': pd.DataFrame indexed by feature name (sequence + charge)
          with (field, condition, timepoint, replicate) MultiIndex columns
        - 'peptides': pd.DataFrame with Sequence, Charge, Start, End
        - 'fd': pd.DataFrame of fully deuterated rows in long format

    Example
    -------
    >>> raw = pd.read_csv('hdx.csv', dtype=str, keep_default_na=False)
    >>> processed = process_hde(raw, protein_states=['wt', 'iBET'])
    >>> processed['wide']['X..Deut'].head()
    """
    if not isinstance(raw, pd.DataFrame):
        raise TypeError("Not a data.frame: process_hde expects a pandas DataFrame")

    cols = _resolve_columns({'data_columns': columns} if columns else None)
    seq_col = cols['sequence']
    charge_col = cols['charge']
    state_col = cols['state']
    time_col = cols['time']

    required = [seq_col, charge_col, state_col, time_col, cols['uptake']]
    missing_cols = [c for c in required if c not in raw.columns]
    if missing_cols:
        raise ValueError(f"Required columns missing from export: {missing_cols}")

    df = raw.copy()

    n_seq = df[seq_col].nunique()
    n_time = df[time_col].nunique()
    n_states = df[state_col].nunique()

    print(f"  Number of peptide sequences: {n_seq}")
    print(f"  Number of timepoints: {n_time}")
    print(f"  Number of protein states: {n_states}")

    for col in df.columns:
        is_missing = df[col].astype(str).str.strip() == MISSING_TOKEN
        if is_missing.any():
            df.loc[is_missing, col] = np.nan

    for source, left, right in (('actual_rt', 'left_rt', 'right_rt'),
                                ('ims_range', 'left_ims', 'right_ims')):
        if cols[source] in df.columns:
            df[cols[left]], df[cols[right]] = _split_range(df[cols[source]])

    is_fd = df[time_col].astype(str).str.strip() == FD_TOKEN
    fd = df[is_fd].copy()
    df = df[~is_fd].copy()
    if len(fd) > 0:
        print(f"  > Set aside {len(fd)} fully deuterated rows")

    df[time_col] = df[time_col].map(_parse_time).astype(float)
    no_time = df[time_col].isna()
    if no_time.any():
        print(f"  Warning: dropping {no_time.sum()} rows without a deuteration time")
        df = df[~no_time].copy()

    df[charge_col] = pd.to_numeric(df[charge_col], errors='raise').astype(int)

    df['replicate'] = df.groupby(
        [time_col, seq_col, state_col, charge_col], sort=False, dropna=False
    ).cumcount() + 1

    # Blank uptake is zero uptake
    raw_col = cols['uptake_raw']
    blank = _is_blank(df[cols['uptake']])
    if raw_col in df.columns:
        blank_raw = _is_blank(df[raw_col])
        df[raw_col] = pd.to_numeric(df[raw_col], errors='coerce').mask(blank_raw, 0.0)
        blank = blank | blank_raw
    df[cols['uptake']] = pd.to_numeric(df[cols['uptake']], errors='coerce').mask(blank, 0.0)

    value_keys = [k for k in WIDE_FIELDS if cols[k] in df.columns]
    for key in value_keys:
        if key not in _RANGE_FIELDS:
            df[cols[key]] = pd.to_numeric(df[cols[key]], errors='coerce')

    current_states = list(pd.unique(df[state_col]))
    if protein_states is None:
        protein_states = [f"Condition {i}" for i in range(1, len(current_states) + 1)]
    elif len(protein_states) != len(current_states):
        raise ValueError(
            f"protein_states does not match number of states: got {len(protein_states)} "
            f"labels for {len(current_states)} states {current_states}"
        )
    protein_states = list(protein_states)
    state_map = dict(zip(current_states, protein_states))
    df[state_col] = df[state_col].map(state_map)
    if len(fd) > 0:
        fd[state_col] = fd[state_col].map(lambda s: state_map.get(s, s))

    # Every (condition, timepoint, replicate) gets a column, absent samples are all missing
    samples = pd.MultiIndex.from_product(
        [protein_states, sorted(df[time_col].unique()), range(1, int(df['replicate'].max()) + 1)],
        names=[state_col, time_col, 'replicate'],
    )

    # Pivot field by field so every field keeps its own dtype
    keys = [seq_col, charge_col, state_col, time_col, 'replicate']
    indexed = df.set_index(keys)
    pieces = {}
    for key in value_keys:
        name = cols[key]
        piece = indexed[name].unstack([state_col, time_col, 'replicate'])
        pieces[name] = piece.reindex(columns=samples)
    wide = pd.concat(pieces, axis=1)
    wide.columns = wide.columns.set_names(WIDE_LEVELS)

    peptides = pd.DataFrame({
        'Sequence': wide.index.get_level_values(seq_col),
        'Charge': wide.index.get_level_values(charge_col),
    })
    for key, label in (('start', 'Start'), ('end', 'End')):
        if cols[key] in pieces:
            peptides[label] = wide[cols[key]].bfill(axis=1).iloc[:, 0].values

    fnames = peptides['Sequence'].astype(str) + peptides['Charge'].astype(str)
    if fnames.duplicated().any():
        raise ValueError(f"Feature names are not unique: {fnames[fnames.duplicated()].tolist()}")

    wide.index = pd.Index(fnames, name='fnames')
    peptides.index = wide.index

    print(f"  > Pivoted to {wide.shape[0]} peptides x "
          f"{wide[cols['uptake']].shape[1]} samples")

    return {
        'wide': wide,
        'peptides': peptides,
        'fd': fd,
    }


def build_hdx_data(processed, experiment=None, timepoints=None, config=None, output_dir=None):
    """
    Assemble the HDX data dictionary from process_hde() output.

    Parameters
    ----------
    processed : dict
        Output from process_hde().
    experiment : list of str, optional
        Conditions to analyse. Defaults to all conditions in order.
    timepoints : array-like, optional
        One timepoint per sample column of a condition. Defaults to the
        timepoints of the first condition's columns.
    config : dict, optional
        Loaded YAML configuration.
    output_dir : str, optional
        Base directory for figures and tables.

    Returns
    -------
    dict
        - 'df': row metadata (Sequence, Charge, Start, End)
        - 'wide': all per-sample fields
        - 'assay': uptake matrix (peptides x samples)
        - 'fd': fully deuterated rows
        - 'design': {'experiment', 'timepoints'}
        - 'config', 'columns', 'metadata', 'output_dirs'
    """
    if not isinstance(processed, dict) or 'wide' not in processed:
        raise TypeError("build_hdx_data expects the output of process_hde()")

    config = config or {}
    columns = _resolve_columns(config)
    wide = processed['wide']
    assay = wide[columns['uptake']].astype(float)

    conditions = list(pd.unique(assay.columns.get_level_values('condition')))
    if experiment is None:
        experiment = conditions
    if timepoints is None:
        first = _condition_columns(assay, experiment[0])
        timepoints = first.get_level_values('timepoint').to_numpy(dtype=float)

    output_dirs = _create_output_dirs(output_dir) if output_dir else None

    data = {
        'df': processed['peptides'].copy(),
        'wide': wide,
        'assay': assay,
        'fd': processed.get('fd'),
        'design': {},
        'config': config,
        'columns': columns,
        'output_dirs': output_dirs,
    }
    experiment, timepoints = _resolve_design(data, experiment, timepoints)
    data['design'] = {'experiment': experiment, 'timepoints': timepoints}

    data['metadata'] = {
        'n_peptides': len(assay),
        'n_samples': assay.shape[1],
        'n_conditions': len(conditions),
        'conditions': conditions,
        'timepoints': sorted(set(assay.columns.get_level_values('timepoint'))),
        'replicates_per_condition': {
            c: int(_condition_columns(assay, c).get_level_values('replicate').max())
            for c in conditions
        },
        'n_fd_rows': 0 if processed.get('fd') is None else len(processed['fd']),
    }

    return data


def prep_hdx(config_path):
    """
    Load and prepare HDX-MS data for quality control.

    This function:
    1. Loads the YAML configuration file
    2. Reads the HDExaminer CSV export
    3. Curates and pivots it with process_hde()
    4. Builds the HDX data dictionary and design vectors
    5. Creates output directory structure
    6. Saves the wide table as CSV for reference

    Parameters
    ----------
    config_path : str
        Path to YAML configuration file.

    Returns
    -------
    dict
        HDX data dictionary, see build_hdx_data().

    Example
    -------
    >>> data = prep_hdx('config/hdx_experiment.yaml')
    >>> print(f"Loaded {len(data['assay'])} peptides")
    >>> print(f"Conditions: {data['design']['experiment']}")
    """

    # =========================================================================
    # 1. LOAD CONFIGURATION
    # =========================================================================
    print("\n" + "="*80)
    print("STEP 1: LOADING DATA AND CONFIGURATION")
    print("="*80)

    config = _load_config(config_path)

    print(f"\n> Configuration loaded")
    print(f"  Experiment: {config.get('experiment', {}).get('name', 'unnamed')}")

    # =========================================================================
    # 2. LOAD HDEXAMINER EXPORT
    # =========================================================================
    print(f"\n[1/4] Loading HDExaminer export...")

    input_file = config['data_paths']['input_file']
    if not os.path.exists(input_file):
        raise FileNotFoundError(f"Input file not found: {input_file}")

    raw = pd.read_csv(input_file, dtype=str, keep_default_na=False)
    print(f"  > Loaded {raw.shape[0]} rows, {raw.shape[1]} columns")

    # =========================================================================
    # 3. CURATE AND PIVOT
    # =========================================================================
    print(f"\n[2/4] Curating and pivoting to wide format...")

    protein_states = (config.get('conditions') or {}).get('protein_states')
    processed = process_hde(raw, protein_states=protein_states,
                            columns=config.get('data_columns'))

    # =========================================================================
    # 4. BUILD DATA DICTIONARY
    # =========================================================================
    print(f"\n[3/4] Building design...")

    design = config.get('design') or {}
    output_dir = config['data_paths']['output_dir']
    data = build_hdx_data(
        processed,
        experiment=design.get('experiment'),
        timepoints=design.get('timepoints'),
        config=config,
        output_dir=output_dir,
    )

    print(f"  Experiment: {', '.join(data['design']['experiment'])}")
    print(f"  Timepoints per condition: {len(data['design']['timepoints'])}")

    # =========================================================================
    # 5. SAVE WIDE TABLE AS CSV (for reference)
    # =========================================================================
    print(f"\n[4/4] Saving wide table as CSV for reference...")

    flat = data['wide'].copy()
    flat.columns = [
        f"{field}_{condition}_{timepoint:g}_{replicate}"
        for field, condition, timepoint, replicate in flat.columns
    ]
    flat = data['df'].join(flat)
    csv_path = os.path.join(data['output_dirs']['tables'], 'hdx_wide_after_prep.csv')
    flat.to_csv(csv_path)

    print(f"  > Saved: hdx_wide_after_prep.csv")
    print(f"    {len(flat)} peptides x {len(flat.columns)} columns")

    # =========================================================================
    # 6. CHECK DATA QUALITY
    # =========================================================================
    assay = data['assay']
    print(f"\n  Missing uptake values by condition:")
    for condition in data['metadata']['conditions']:
        cols = _condition_columns(assay, condition)
        total_values = len(assay) * len(cols)
        missing = assay[cols].isna().sum().sum()
        pct_missing = (missing / total_values) * 100 if total_values else 0.0
        print(f"    {condition}: {pct_missing:.1f}% missing")

    print("\n" + "="*80)
    print("DATA PREPARATION COMPLETE")
    print("="*80)
    print(f"\nPeptides:                {data['metadata']['n_peptides']}")
    print(f"Samples:                 {data['metadata']['n_samples']}")
    print(f"Fully deuterated rows:   {data['metadata']['n_fd_rows']}")
    print("\n" + "="*80 + "\n")

    # Auto-save for sequential workflow
    save_path = os.path.join(output_dir, 'data_after_prep.pkl')
    save_data(data, save_path)

    return data
