"""Shared test fixtures for HDX-MS QC pipeline tests."""

import matplotlib

matplotlib.use('Agg')

import pandas as pd
import pytest
import yaml

# (sequence, start, end, charge)
PEPTIDES = [
    ('AAKLVSEL', 1, 8, 2),
    ('KLVSELFG', 3, 10, 2),
]
STATES = ['apo', 'holo']
TIMES = ['0s', '30s', '300s']
N_REPLICATES = 3

# Uptake per timepoint, offset per peptide
_BASE_UPTAKE = [None, 2.0, 4.0]


def _default_uptake(p, state, t, rep):
    if _BASE_UPTAKE[t] is None:
        return ''
    return f"{_BASE_UPTAKE[t] + 0.5 * p:.2f}"


def _default_rt(p, state, t, rep):
    return f"{5.1 + p:.2f}-{5.6 + p:.2f}"


def _default_ims(p, state, t, rep):
    return f"{3.0 + p:.2f}-{3.4 + p:.2f}"


def make_export(peptides=None, uptake=None, rt=None, ims=None, n_fd=1):
    """
    Build a synthetic HDExaminer export, all values as strings.

    `uptake`, `rt` and `ims` are callables of (peptide index, state,
    timepoint index, replicate) returning the cell text.
    """
    peptides = peptides or PEPTIDES
    uptake = uptake or _default_uptake
    rt = rt or _default_rt
    ims = ims or _default_ims

    rows = []
    for state in STATES:
        times = [(t, label) for t, label in enumerate(TIMES)] + [(None, 'FD')] * n_fd
        for t, label in times:
            n_rep = N_REPLICATES if t is not None else 1
            for rep in range(1, n_rep + 1):
                for p, (sequence, start, end, charge) in enumerate(peptides):
                    theor = 400.0 + 50.0 * p + 10.0 * charge
                    value = uptake(p, state, t, rep) if t is not None else '6.00'
                    rows.append({
                        'Protein.State': state,
                        'Deut.Time': label,
                        'Sequence': sequence,
                        'Charge': str(charge),
                        'Start': str(start),
                        'End': str(end),
                        'Search.RT': f"{5.35 + p:.2f}",
                        'Actual.RT': rt(p, state, t, rep) if t is not None else '5.10-5.60',
                        'X..Spectra': '4',
                        'Search.IMS': 'n/a',
                        'IMS.Range': ims(p, state, t, rep) if t is not None else '3.00-3.40',
                        'Max.Inty': f"{1e5 * (p + 1) * (1 + 0.1 * rep):.1f}",
                        'Exp.Cent': f"{theor * (1 + 5e-6):.6f}",
                        'Theor.Cent': f"{theor:.6f}",
                        'Score': '0.95',
                        'Confidence': 'High',
                        'Deut..': value,
                        'X..Deut': value,
                    })
    return pd.DataFrame(rows)


@pytest.fixture
def export_factory():
    """Factory for synthetic HDExaminer exports."""
    return make_export


@pytest.fixture
def raw_export():
    """Noiseless export: 2 conditions x 3 timepoints x 3 replicates x 2 peptides."""
    return make_export()


@pytest.fixture
def sample_config(tmp_path, raw_export):
    """Create a minimal YAML config and matching CSV export for testing."""
    csv_path = str(tmp_path / 'hdx.csv')
    raw_export.to_csv(csv_path, index=False)

    config = {
        'experiment': {
            'name': 'Test_Experiment',
            'description': 'Unit test experiment',
        },
        'data_paths': {
            'input_file': csv_path,
            'output_dir': str(tmp_path / 'results'),
        },
        'conditions': {
            'protein_states': ['wt', 'iBET'],
        },
        'qc_parameters': {
            'missing_threshold': None,
            'overlap': 5,
            'imputation': 'zero',
        },
    }

    config_path = str(tmp_path / 'test_config.yaml')
    with open(config_path, 'w') as f:
        yaml.dump(config, f)

    return config_path, tmp_path


@pytest.fixture
def prepped_data(sample_config):
    """Run prep_hdx and return the result for downstream tests."""
    from hdxqc import prep_hdx

    config_path, tmp_path = sample_config
    data = prep_hdx(config_path)
    return data


@pytest.fixture
def build_data(tmp_path):
    """Curate an export and assemble the HDX data dictionary."""
    from hdxqc import build_hdx_data, process_hde

    def _build(raw, **kwargs):
        processed = process_hde(raw, protein_states=['wt', 'iBET'])
        return build_hdx_data(processed, output_dir=str(tmp_path / 'results'), **kwargs)

    return _build


def make_peak_table(rows, n_peaks=6):
    """
    HDsite-like peak export: 13 descriptor columns, base m/z, peak intensities.

    `rows` holds (state, sequence, charge, D left, max D) tuples; the peak
    intensities are the matching theoretical envelope.
    """
    from pyteomics import mass

    from hdxqc.spectra import theoretical_envelope

    records = []
    for state, sequence, charge, d_left, max_d in rows:
        _, intensity = theoretical_envelope(sequence, charge, d_left / max_d, n_peaks=n_peaks)
        record = {
            'Protein State': state,
            'Deut Time': '30s',
            'Sequence': sequence,
            'Start': '1',
            'End': str(len(sequence)),
            'Start RT': 5.0,
            'End RT': 5.5,
            'z': charge,
            '%D left': d_left,
            'maxD': max_d,
            'Score': 0.9,
            'Peak Width': 0.2,
            'Centroid': 0.0,
            'Base m/z': mass.calculate_mass(sequence=sequence, charge=charge),
        }
        for i, value in enumerate(intensity):
            record[f'Peak {i}'] = value * 1e6
        records.append(record)
    return pd.DataFrame(records)


@pytest.fixture
def peak_table_factory():
    """Factory for synthetic HDsite peak exports."""
    return make_peak_table
