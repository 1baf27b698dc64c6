"""
HDX-MS Quality Control Pipeline
===============================

A reusable Python package for quality control of hydrogen-deuterium
exchange mass spectrometry data exported from HDExaminer.

Main Functions
--------------
prep_hdx()               - Load an HDExaminer export and build the HDX data
process_hde()            - Curate and pivot an HDExaminer table
is_missing_at_random()   - Flag and filter peptides missing not at random
impute_hdx()             - Impute missing uptake values
compute_mass_error()     - Centroid mass error in ppm
intensity_outliers()     - Mean-variance outliers (Cook's distance)
rtime_outliers()         - Retention time window outliers
imtime_outliers()        - Ion mobility window outliers
compute_monotone_stats() - Uptake monotonicity over time
charge_correlation()     - Correlation between charge states
compatible_uptake()      - Uptake consistency of overlapping peptides
replicate_correlation()  - Replicate variance outliers
replicate_outlier()      - Replicate skew outliers
spectra_similarity()     - Observed vs theoretical isotope envelopes
quality_control()        - Merge diagnostics into a summary table
qc_hdx()                 - Run every diagnostic, plot and summarise
save_data()              - Save analysis data for later
load_data()              - Load saved analysis data

Example Workflow
----------------
>>> from hdxqc import prep_hdx, is_missing_at_random, impute_hdx, qc_hdx
>>>
>>> data = prep_hdx('config/hdx_experiment.yaml')
>>> data = is_missing_at_random(data)
>>> data = impute_hdx(data)
>>> qc = qc_hdx(data)
"""

from .prep import prep_hdx, process_hde, build_hdx_data
from .missingness import is_missing_at_random, impute_hdx
from .qc import compute_mass_error, intensity_outliers, rtime_outliers, imtime_outliers
from .statistics import (
    compute_monotone_stats,
    charge_correlation,
    compatible_uptake,
    replicate_correlation,
    replicate_outlier,
)
from .spectra import spectra_similarity, generate_spectra, spectral_similarity
from .report import quality_control, qc_hdx
from .visualization import (
    plot_missing,
    plot_mass_error,
    plot_intensity_outliers,
    plot_rtime_outliers,
    plot_imtime_outliers,
    plot_monotone_stat,
    plot_spectra_mirror,
)
from .utils import save_data, load_data


__version__ = "0.1.0"

__all__ = [
    'prep_hdx',
    'process_hde',
    'build_hdx_data',
    'is_missing_at_random',
    'impute_hdx',
    'compute_mass_error',
    'intensity_outliers',
    'rtime_outliers',
    'imtime_outliers',
    'compute_monotone_stats',
    'charge_correlation',
    'compatible_uptake',
    'replicate_correlation',
    'replicate_outlier',
    'spectra_similarity',
    'generate_spectra',
    'spectral_similarity',
    'quality_control',
    'qc_hdx',
    'plot_missing',
    'plot_mass_error',
    'plot_intensity_outliers',
    'plot_rtime_outliers',
    'plot_imtime_outliers',
    'plot_monotone_stat',
    'plot_spectra_mirror',
    'save_data',
    'load_data',
]
