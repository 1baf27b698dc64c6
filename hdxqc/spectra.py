"""
Spectral similarity for the HDX-MS QC pipeline.

Builds observed isotope envelopes from an HDsite peak export, synthesises
the matching theoretical envelopes from sequence, charge and deuterium
incorporation, and scores each pair with a ppm-tolerant cosine similarity.
"""

import re
from concurrent.futures import ProcessPoolExecutor
from functools import lru_cache

import numpy as np
import pandas as pd
from pyteomics import mass
from scipy.stats import binom

# 13C - 12C mass difference, used as the spacing between isotope peaks
ISOTOPE_SPACING = 1.0033548

# Isotopologues below this abundance are pruned
ISOTOPOLOGUE_THRESHOLD = 1e-6


@lru_cache(maxsize=1024)
def _isotopologue_abundances(sequence):
    """Natural isotope abundances binned by nominal mass shift, monoisotopic first."""
    monoisotopic = mass.calculate_mass(sequence=sequence)
    dist = list(mass.isotopologues(
        sequence=sequence,
        report_abundance=True,
        overall_threshold=ISOTOPOLOGUE_THRESHOLD,
    ))
    shifts = [int(round(mass.calculate_mass(composition=comp) - monoisotopic)) for comp, _ in dist]
    binned = np.zeros(max(shifts) + 1 if shifts else 1)
    for shift, (_, abundance) in zip(shifts, dist):
        binned[shift] += abundance
    return tuple(binned)


def _natural_envelope(sequence, n_peaks):
    """Natural isotope envelope of a peptide, truncated to n_peaks."""
    envelope = np.asarray(_isotopologue_abundances(sequence.upper()))[:n_peaks]
    out = np.zeros(n_peaks)
    out[:len(envelope)] = envelope
    return out


def n_exchangeable(sequence):
    """Backbone amides that can exchange: residues minus prolines minus two."""
    s = sequence.upper()
    return max(len(s) - s.count('P') - 2, 0)


def theoretical_envelope(sequence, charge, incorp, n_peaks=None):
    """
    Isotope envelope of a peptide at a given deuterium incorporation.

    The natural envelope is convolved with a binomial distribution of
    deuterium over the exchangeable amides.

    Parameters
    ----------
    sequence : str
        Peptide sequence.
    charge : int
        Charge state.
    incorp : float
        Fraction of exchangeable amides that are deuterated (0 to 1).
    n_peaks : int, optional
        Number of isotope peaks returned. Defaults to the number needed to
        cover full deuteration plus three natural isotopes.

    Returns
    -------
    tuple of np.ndarray
        (mz, intensity), intensities summing to at most one.
    """
    n_exch = n_exchangeable(sequence)
    if n_peaks is None:
        n_peaks = n_exch + 4
    incorp = float(np.clip(incorp, 0.0, 1.0))

    deuterium = binom.pmf(np.arange(n_exch + 1), n_exch, incorp)
    intensity = np.convolve(_natural_envelope(sequence, n_peaks), deuterium)[:n_peaks]

    mono_mz = mass.calculate_mass(sequence=sequence, charge=int(charge))
    mz = mono_mz + np.arange(n_peaks) * ISOTOPE_SPACING / charge
    return mz, intensity


def generate_spectra(sequences, incorps, charges, n_peaks=None):
    """
    Theoretical spectra for (sequence, incorporation, charge) triples.

    Returns
    -------
    pd.DataFrame
        One row per spectrum with sequence, charge, incorp, mz, intensity
        (mz and intensity hold numpy arrays).
    """
    rows = []
    for sequence, incorp, charge in zip(sequences, incorps, charges):
        mz, intensity = theoretical_envelope(sequence, charge, incorp, n_peaks)
        rows.append({
            'sequence': sequence,
            'charge': int(charge),
            'incorp': float(incorp),
            'mz': mz,
            'intensity': intensity,
        })
    return pd.DataFrame(rows, columns=['sequence', 'charge', 'incorp', 'mz', 'intensity'])


def _match_peaks(x_mz, y_mz, ppm):
    """Pair each peak of x with the closest unused peak of y within ppm."""
    pairs = []
    used = set()
    if len(y_mz) == 0:
        return pairs
    for i, mz in enumerate(x_mz):
        diff = np.abs(y_mz - mz)
        j = int(np.argmin(diff))
        if diff[j] <= abs(mz) * ppm * 1e-6 and j not in used:
            pairs.append((i, j))
            used.add(j)
    return pairs


def spectral_similarity(x_mz, x_intensity, y_mz, y_intensity, ppm=300):
    """
    Normalized dot product of two centroided spectra.

    Peaks are matched within `ppm`; unmatched peaks only contribute to the
    norms. Returns NaN when either spectrum is empty.
    """
    x_mz = np.asarray(x_mz, dtype=float)
    y_mz = np.asarray(y_mz, dtype=float)
    x_intensity = np.nan_to_num(np.asarray(x_intensity, dtype=float))
    y_intensity = np.nan_to_num(np.asarray(y_intensity, dtype=float))

    norm = np.sqrt((x_intensity ** 2).sum()) * np.sqrt((y_intensity ** 2).sum())
    if norm == 0:
        return np.nan

    pairs = _match_peaks(x_mz, y_mz, ppm)
    dot = sum(x_intensity[i] * y_intensity[j] for i, j in pairs)
    return float(dot / norm)


def _score_task(task):
    return spectral_similarity(*task)


def _numeric(series):
    """Peak table column as floats, unparseable cells ('NaN', blanks) as zero."""
    return pd.to_numeric(series, errors='coerce').fillna(0).astype(float)


def _make_names(names):
    """Syntactically valid, unique column names ('% D left' -> 'X..D.left')."""
    tidy = []
    seen = {}
    for name in names:
        new = str(name)
        if not re.match(r'[A-Za-z]|\.(?![0-9])', new):
            new = 'X' + new
        new = re.sub(r'[^0-9A-Za-z._]', '.', new)
        if new in seen:
            seen[new] += 1
            new = f"{new}.{seen[new]}"
        else:
            seen[new] = 0
        tidy.append(new)
    return tidy


def spectra_similarity(peaks, object, experiment=None, mz_col=13,
                       start_rt='Start.RT', end_rt='End.RT', charge='z',
                       incorp_d='X.D.left', max_d='maxD', num_spectra=None,
                       ppm=300, n_workers=1, state='Protein.State',
                       deut_time='Deut.Time', sequence='Sequence'):
    """
    Compare observed isotope envelopes with theoretical ones.

    Parameters
    ----------
    peaks : pd.DataFrame
        HDsite peak export. Column `mz_col` (0-based position) holds the
        base m/z; every later column is an isotope peak intensity.
    object : pd.DataFrame
        Table whose `sequence` column matches `peaks` row by row.
    experiment : list of str
        Protein states to analyse.
    start_rt, end_rt, charge, incorp_d, max_d : str, optional
        Column names after name tidying.
    num_spectra : int, optional
        Only score the first `num_spectra` spectra (default: all).
    ppm : float, optional
        Peak matching tolerance (default: 300).
    n_workers : int, optional
        Score spectra on a process pool when greater than one.

    Returns
    -------
    dict
        - 'observed': pd.DataFrame with sequence, charge, rtime, incorp, mz,
          intensity, score, experiment, deut_time, replicate
        - 'matched': theoretical spectra from generate_spectra()

    Example
    -------
    >>> peaks = pd.read_csv('hdsite_peaks.csv')
    >>> spectra = spectra_similarity(peaks, hdx_long, experiment=['wt'], num_spectra=50)
    >>> spectra['observed']['score'].describe()
    """
    if not isinstance(peaks, pd.DataFrame):
        raise TypeError("peaks must be a data.frame")
    if not isinstance(object, pd.DataFrame):
        raise TypeError("object must be a data.frame")
    if experiment is None:
        raise ValueError("Must provide the experimental conditions")
    if len(object) != len(peaks):
        raise ValueError(f"object has {len(object)} rows but peaks has {len(peaks)}")
    if isinstance(experiment, str):
        experiment = [experiment]

    print("\n" + "="*80)
    print("SPECTRAL SIMILARITY")
    print("="*80)

    peaks = peaks.copy()
    peaks.columns = _make_names(peaks.columns)
    for col in (start_rt, end_rt, charge, incorp_d, max_d, state):
        if col not in peaks.columns:
            raise ValueError(f"Column '{col}' not found in peaks")
    if mz_col >= peaks.shape[1] - 1:
        raise ValueError(f"No intensity columns after mz_col={mz_col}")

    keep = peaks[state].astype(str).isin(experiment).to_numpy()
    peaks = peaks[keep].reset_index(drop=True)
    sequences = object[sequence].to_numpy()[keep]
    print(f"\n  {len(peaks)} spectra in {', '.join(experiment)}")

    charges = _numeric(peaks[charge]).to_numpy().astype(int)
    base_mz = _numeric(peaks.iloc[:, mz_col]).to_numpy()
    intensity = peaks.iloc[:, mz_col + 1:].apply(_numeric).to_numpy(dtype=float)
    n_peaks = intensity.shape[1]

    mz = base_mz[:, None] + np.arange(n_peaks)[None, :] * ISOTOPE_SPACING / charges[:, None]
    max_intensity = np.nanmax(intensity) if intensity.size else 0
    if max_intensity > 0:
        intensity = intensity / max_intensity

    with np.errstate(divide='ignore', invalid='ignore'):
        incorp = (_numeric(peaks[incorp_d]) / _numeric(peaks[max_d])).to_numpy()
    incorp = np.clip(np.nan_to_num(incorp, nan=0.0, posinf=1.0, neginf=0.0), 0.0, 1.0)

    observed = pd.DataFrame({
        'sequence': sequences,
        'charge': charges,
        'rtime': ((_numeric(peaks[start_rt]) + _numeric(peaks[end_rt])) / 2).to_numpy(),
        'incorp': incorp,
        'mz': list(mz),
        'intensity': list(intensity),
    })

    if num_spectra is None:
        num_spectra = len(observed)
    num_spectra = min(int(num_spectra), len(observed))

    print(f"  Generating {num_spectra} theoretical spectra...")
    matched = generate_spectra(sequences[:num_spectra], incorp[:num_spectra],
                               charges[:num_spectra], n_peaks=n_peaks)
    if len(matched):
        theo_max = max(np.nanmax(i) for i in matched['intensity'])
        if theo_max > 0:
            matched['intensity'] = [i / theo_max for i in matched['intensity']]

    tasks = [
        (observed['mz'][i], observed['intensity'][i], matched['mz'][i], matched['intensity'][i], ppm)
        for i in range(num_spectra)
    ]
    print(f"  Scoring {len(tasks)} spectra (ppm={ppm}, workers={n_workers})...")
    if n_workers > 1 and len(tasks) > 1:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            scores = list(executor.map(_score_task, tasks))
    else:
        scores = [_score_task(task) for task in tasks]

    observed['score'] = scores + [np.nan] * (len(observed) - num_spectra)
    observed['experiment'] = peaks[state].to_numpy()
    observed['deut_time'] = peaks[deut_time].to_numpy() if deut_time in peaks.columns else np.nan
    observed['replicate'] = observed.groupby(
        ['sequence', 'charge', 'experiment', 'deut_time'], dropna=False
    ).cumcount() + 1
    matched['score'] = scores

    print(f"  > Median score: {np.nanmedian(scores) if scores else float('nan'):.3f}")
    print("="*80 + "\n")

    return {'observed': observed, 'matched': matched}
