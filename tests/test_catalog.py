"""Tests for catalog reading and flux backfill."""

import math

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from celestefit.catalog import (
    backfill_fluxes,
    flux_to_mag,
    fluxes_to_color,
    load_catalog_csv,
    mag_to_flux,
)

from conftest import make_entry, make_image, sky_of_pixel

BANDS = ["u", "g", "r", "i", "z"]


def write_catalog(path, **overrides):
    data = {
        "ID": ["00101", "00102"],
        "THING_ID": [7, 8],
        "RA": [150.0, 150.001],
        "DEC": [2.0, 2.001],
        "TYPE": ["STAR", "EXP"],
        "FRAC_DEV": [0.1, 0.9],
        "AB": [0.5, 0.7],
        "THETA": [90.0, 45.0],
        "Re": [1.2, 3.4],
    }
    for b in BANDS:
        data[f"FLUX_{b}"] = [10.0, 20.0]
    data.update(overrides)
    pd.DataFrame(data).to_csv(path, index=False)
    return path


class TestLoadCatalog:

    def test_reads_entries(self, tmp_path):
        cat = load_catalog_csv(write_catalog(tmp_path / "cat.csv"), BANDS)
        assert len(cat) == 2
        star, gal = cat
        assert star.objid == "00101"
        assert star.thing_id == 7
        assert star.is_star
        assert not gal.is_star
        assert star.pos == (150.0, 2.0)
        assert star.gal_angle == pytest.approx(math.pi / 2)
        assert gal.gal_scale == pytest.approx(3.4)
        assert_allclose(gal.star_fluxes, [20.0] * 5)
        # No GAL_FLUX_* columns: galaxy fluxes follow the star fluxes.
        assert_allclose(gal.gal_fluxes, gal.star_fluxes)

    def test_galaxy_flux_columns(self, tmp_path):
        extra = {f"GAL_FLUX_{b}": [1.0, 2.0] for b in BANDS}
        cat = load_catalog_csv(write_catalog(tmp_path / "cat.csv", **extra), BANDS)
        assert_allclose(cat[1].gal_fluxes, [2.0] * 5)

    def test_missing_flux_is_nan(self, tmp_path):
        cat = load_catalog_csv(write_catalog(tmp_path / "cat.csv", FLUX_r=[np.nan, 3.0]), BANDS)
        assert np.isnan(cat[0].star_fluxes[2])

    def test_duplicate_thing_ids(self, tmp_path):
        with pytest.raises(ValueError):
            load_catalog_csv(write_catalog(tmp_path / "cat.csv", THING_ID=[5, 5]), BANDS)

    def test_missing_position_columns(self, tmp_path):
        p = tmp_path / "cat.csv"
        pd.DataFrame({"ID": ["1"], "FLUX_r": [1.0]}).to_csv(p, index=False)
        with pytest.raises(ValueError):
            load_catalog_csv(p, BANDS)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_catalog_csv(tmp_path / "nope.csv", BANDS)


class TestBackfill:

    def test_fills_missing_band_from_aperture(self):
        image = make_image(shape=(60, 60), band=2, pixels=np.ones((60, 60)))
        ra, dec = sky_of_pixel(image, 30.0, 30.0)
        fluxes = np.array([5.0, 5.0, np.nan, 5.0, 5.0])
        cat = [make_entry(ra=ra, dec=dec, fluxes=fluxes)]
        out = backfill_fluxes(cat, [image], r_ap=5.0)
        assert out[0].star_fluxes[2] == pytest.approx(math.pi * 25.0, rel=1e-2)
        assert out[0].gal_fluxes[2] == pytest.approx(math.pi * 25.0, rel=1e-2)
        assert out[0].star_fluxes[0] == 5.0
        assert np.isnan(cat[0].star_fluxes[2])

    def test_bands_without_images_become_zero(self):
        image = make_image(shape=(60, 60), band=2, pixels=np.ones((60, 60)))
        cat = [make_entry(fluxes=[np.nan, 5.0, 5.0, 5.0, 5.0])]
        out = backfill_fluxes(cat, [image])
        assert out[0].star_fluxes[0] == 0.0

    def test_empty_catalog(self):
        assert backfill_fluxes([], [make_image()]) == []


class TestMagnitudes:

    def test_zero_point(self):
        assert float(mag_to_flux(22.5)) == pytest.approx(1.0)
        assert float(flux_to_mag(100.0)) == pytest.approx(17.5)

    def test_non_positive_flux(self):
        assert np.isnan(flux_to_mag(0.0))
        assert np.isnan(fluxes_to_color(-1.0, 2.0))

    def test_color(self):
        assert float(fluxes_to_color(1.0, 10.0)) == pytest.approx(2.5)
