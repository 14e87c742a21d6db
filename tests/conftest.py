"""Shared fixtures: synthetic TAN images, catalogs and objectives."""

import numpy as np
import pytest
from astropy.wcs import WCS

from celestefit.catalog import CatalogEntry
from celestefit.images import Image
from celestefit.layout import celeste_layout
from celestefit.psf import GaussianPSF

RA0 = 150.0
DEC0 = 2.0
PIXSCALE_DEG = 0.4 / 3600.0


def make_wcs(shape, ra0=RA0, dec0=DEC0, pixscale_deg=PIXSCALE_DEG):
    w = WCS(naxis=2)
    w.wcs.ctype = ["RA---TAN", "DEC--TAN"]
    w.wcs.crval = [ra0, dec0]
    w.wcs.crpix = [shape[1] / 2.0 + 0.5, shape[0] / 2.0 + 0.5]
    w.wcs.cdelt = [-pixscale_deg, pixscale_deg]
    return w


def make_image(shape=(100, 100), band=2, sigma=1.0, psf=None, pixels=None, name="synthetic"):
    if pixels is None:
        pixels = np.zeros(shape, dtype=float)
    return Image(
        pixels=pixels,
        band=band,
        wcs=make_wcs(shape),
        psf=psf if psf is not None else GaussianPSF(fwhm_pix=3.0, radius_pix=15.0),
        sigma=sigma,
        name=name,
    )


def sky_of_pixel(image, x, y):
    ra, dec = image.wcs.all_pix2world(float(x), float(y), 0)
    return float(ra), float(dec)


def make_entry(ra=RA0, dec=DEC0, is_star=True, fluxes=None, gal_fluxes=None, thing_id=0, objid=None, **kw):
    fluxes = np.asarray(fluxes if fluxes is not None else [10.0, 20.0, 40.0, 60.0, 80.0], dtype=float)
    gal_fluxes = np.asarray(gal_fluxes if gal_fluxes is not None else fluxes, dtype=float)
    params = dict(gal_frac_dev=0.3, gal_ab=0.6, gal_angle=0.5, gal_scale=1.5)
    params.update(kw)
    return CatalogEntry(
        pos=(float(ra), float(dec)),
        is_star=bool(is_star),
        star_fluxes=fluxes,
        gal_fluxes=gal_fluxes,
        objid=str(objid if objid is not None else f"obj{thing_id:03d}"),
        thing_id=int(thing_id),
        **params,
    )


def r1_pull_objective(target=3.0, bad_sources=()):
    """ELBO = -sum (r1 - target)^2 over the active sources.

    Sources listed in ``bad_sources`` return a NaN gradient.
    """
    bad = set(bad_sources)

    def objective(tiled_images, mp, active_sources):
        layout = mp.layout
        value = 0.0
        grad = {}
        for s in active_sources:
            vs = mp.vp[s]
            g = np.zeros_like(vs)
            d = vs[layout.r1] - target
            value -= float(np.sum(d * d))
            g[layout.r1] = -2.0 * d
            if s in bad:
                g[layout.r1] = np.nan
            grad[s] = g
        return value, grad

    return objective


def quadratic_objective(targets, weights=None):
    """ELBO = -sum_s sum_i w_i (vs_i - t_s,i)^2 in constrained space."""

    def objective(tiled_images, mp, active_sources):
        value = 0.0
        grad = {}
        for s in active_sources:
            vs = mp.vp[s]
            w = np.ones_like(vs) if weights is None else weights
            d = vs - targets[s]
            value -= float(np.sum(w * d * d))
            grad[s] = -2.0 * w * d
        return value, grad

    return objective


@pytest.fixture
def layout():
    return celeste_layout(n_bands=5)


@pytest.fixture
def image():
    return make_image()
