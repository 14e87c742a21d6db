"""Tests for the per-source inference driver."""

import logging

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from celestefit.infer import (
    InferOptions,
    fit_sources,
    infer,
    results_to_frame,
    select_target_sources,
    write_results,
)
from celestefit.errors import NumericalDivergence, TrimmingExhausted
from celestefit.optimize import OptimizeStatus

from conftest import make_entry, make_image, r1_pull_objective, sky_of_pixel

BANDS = ["u", "g", "r", "i", "z"]


def five_source_field():
    image = make_image(shape=(100, 100), sigma=1.0)
    pix = [(20, 20), (75, 25), (50, 50), (25, 75), (80, 80)]
    catalog = []
    for k, (x, y) in enumerate(pix):
        ra, dec = sky_of_pixel(image, x, y)
        catalog.append(make_entry(ra=ra, dec=dec, fluxes=[100.0] * 5, thing_id=100 + k, objid=f"{k:05d}"))
    return catalog, [image]


class TestSelectTargets:

    def test_flux_floor(self):
        cat = [make_entry(fluxes=[1.0] * 5, thing_id=0), make_entry(fluxes=[0.5, 0.5, 3.0, 0.5, 0.5], thing_id=1)]
        kept, targets = select_target_sources(cat, InferOptions(min_flux=2.0))
        assert [e.thing_id for e in kept] == [1]
        assert targets == [0]

    def test_objid_filter(self):
        cat = [make_entry(thing_id=i, objid=f"{i:04d}") for i in range(3)]
        kept, targets = select_target_sources(cat, InferOptions(objid="0002"))
        assert [e.objid for e in kept] == ["0002"]
        assert targets == [0]

    def test_box_is_strict_and_keeps_neighbors(self):
        cat = [
            make_entry(ra=10.0, dec=0.0, thing_id=0),
            make_entry(ra=10.5, dec=0.5, thing_id=1),
            make_entry(ra=12.0, dec=0.5, thing_id=2),
        ]
        kept, targets = select_target_sources(cat, InferOptions(ra_range=(10.0, 11.0), dec_range=(-1.0, 1.0)))
        assert len(kept) == 3
        assert targets == [1]

    def test_options_validation(self):
        with pytest.raises(ValueError):
            InferOptions(ra_range=(1.0, 1.0))
        with pytest.raises(ValueError):
            InferOptions(tile_width=0)
        with pytest.raises(ValueError):
            InferOptions(max_workers=0)

    def test_from_config(self):
        cfg = {
            "infer": {"tile_width": 15, "min_flux": 1.0, "objid": 123, "ra_range": [0, 20], "max_workers": 2},
            "optimizer": {"ftol": 1e-7, "frozen": ["u"], "verbose": True},
        }
        opts = InferOptions.from_config(cfg)
        assert opts.tile_width == 15
        assert opts.objid == "123"
        assert opts.ra_range == (0.0, 20.0)
        assert opts.dec_range == (-1000.0, 1000.0)
        assert opts.frozen == ("u",)
        assert opts.ftol == 1e-7
        assert opts.max_iters == 50


class TestInfer:

    def test_fits_every_source(self):
        catalog, images = five_source_field()
        results = infer(catalog, images, r1_pull_objective(target=3.0), InferOptions(max_iters=50))
        assert sorted(results) == [100, 101, 102, 103, 104]
        for thing_id, r in results.items():
            assert r.thing_id == thing_id
            assert_allclose(r.vs[:2], [r.ra, r.dec])
            assert r.status in (OptimizeStatus.CONVERGED, OptimizeStatus.STALLED)
            assert r.init_time >= 0.0
            assert r.fit_time >= 0.0
            assert r.iteration_count >= 1

    @pytest.mark.parametrize("max_workers", [1, 3])
    def test_one_divergent_source_is_isolated(self, max_workers, caplog):
        catalog, images = five_source_field()
        objective = r1_pull_objective(bad_sources=[2])
        with caplog.at_level(logging.WARNING, logger="celestefit.infer"):
            results = infer(catalog, images, objective, InferOptions(max_workers=max_workers))
        assert sorted(results) == [100, 101, 103, 104]
        assert "thing_id=102" in caplog.text
        assert "NumericalDivergence" in caplog.text

    def test_outcomes_carry_the_failure(self):
        catalog, images = five_source_field()
        outcomes = fit_sources(catalog, images, r1_pull_objective(bad_sources=[2]))
        assert [o.ok for o in outcomes] == [True, True, False, True, True]
        assert isinstance(outcomes[2].error, NumericalDivergence)
        assert outcomes[2].thing_id == 102
        assert outcomes[2].reason.startswith("NumericalDivergence")

    def test_source_without_tiles_is_a_failure(self):
        catalog, images = five_source_field()
        ra, dec = sky_of_pixel(images[0], 900, 900)
        catalog.append(make_entry(ra=ra, dec=dec, fluxes=[100.0] * 5, thing_id=999))
        outcomes = fit_sources(catalog, images, r1_pull_objective())
        assert isinstance(outcomes[-1].error, TrimmingExhausted)
        assert sum(o.ok for o in outcomes) == 5

    def test_other_errors_propagate(self):
        catalog, images = five_source_field()

        def objective(tiled_images, mp, active_sources):
            raise RuntimeError("likelihood exploded")

        with pytest.raises(RuntimeError):
            infer(catalog, images, objective)

    def test_no_targets(self):
        catalog, images = five_source_field()
        assert infer(catalog, images, r1_pull_objective(), InferOptions(min_flux=1e6)) == {}

    def test_catalog_is_not_modified(self):
        catalog, images = five_source_field()
        before = [np.array(e.star_fluxes) for e in catalog]
        infer(catalog, images, r1_pull_objective(target=0.0))
        for e, f in zip(catalog, before):
            assert_allclose(e.star_fluxes, f)

    def test_image_band_outside_layout(self):
        catalog, _ = five_source_field()
        with pytest.raises(ValueError):
            infer(catalog, [make_image(band=7)], r1_pull_objective())

    def test_objective_sees_trimmed_tiles(self):
        catalog, images = five_source_field()
        seen = []
        inner = r1_pull_objective()

        def objective(tiled_images, mp, active_sources):
            seen.append(sum(len(t) for t in tiled_images))
            return inner(tiled_images, mp, active_sources)

        infer(catalog, images, objective, InferOptions(tile_width=10))
        assert seen
        assert max(seen) < 100


class TestResultsTable:

    def test_frame_and_csv(self, tmp_path, layout):
        catalog, images = five_source_field()
        results = infer(catalog, images, r1_pull_objective(target=3.0))
        df = results_to_frame(results, layout, BANDS)
        assert list(df["thing_id"]) == [100, 101, 102, 103, 104]
        assert list(df["ID"]) == ["00000", "00001", "00002", "00003", "00004"]
        assert {"prob_star", "star_mag_r", "gal_color_ug", "opt_status", "fit_time"} <= set(df.columns)
        assert_allclose(df["star_flux_r"], np.exp(3.0 + 0.5e-3), rtol=1e-4)

        out = write_results(results, tmp_path / "out" / "results.csv", layout, BANDS)
        back = pd.read_csv(out, dtype={"ID": str})
        assert len(back) == 5
        assert back["ID"].iloc[0] == "00000"

    def test_band_names_must_match(self, layout):
        with pytest.raises(ValueError):
            results_to_frame({}, layout, ["g", "r"])
