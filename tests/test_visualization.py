"""Tests for hdxqc.visualization module."""

import os

import matplotlib.pyplot as plt
import pytest

from hdxqc import (
    plot_imtime_outliers,
    plot_intensity_outliers,
    plot_mass_error,
    plot_missing,
    plot_monotone_stat,
    plot_rtime_outliers,
    plot_spectra_mirror,
    spectra_similarity,
)


class TestPlots:
    @pytest.mark.parametrize('plot_func', [
        plot_missing,
        plot_mass_error,
        plot_intensity_outliers,
        plot_rtime_outliers,
        plot_imtime_outliers,
        plot_monotone_stat,
    ])
    def test_returns_figure(self, prepped_data, plot_func):
        fig = plot_func(prepped_data)
        assert isinstance(fig, plt.Figure)
        plt.close(fig)

    def test_saves_to_path(self, prepped_data, tmp_path):
        path = str(tmp_path / 'missing.pdf')
        fig = plot_missing(prepped_data, save_path=path)
        plt.close(fig)
        assert os.path.exists(path)

    def test_spectra_mirror(self, peak_table_factory, tmp_path):
        peaks = peak_table_factory([('wt', 'AAKLVSEL', 2, 1.5, 3.0)])
        spectra = spectra_similarity(peaks, peaks[['Sequence']], experiment=['wt'])

        path = str(tmp_path / 'mirror.pdf')
        fig = plot_spectra_mirror(spectra, save_path=path)
        plt.close(fig)
        assert os.path.exists(path)
