"""
Band images: pixels, WCS, PSF and per-pixel noise.
"""

from __future__ import annotations

import concurrent.futures as cf
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import numpy as np
from astropy.io import fits
from astropy.wcs import WCS

from .psf import PointSpreadFunction, psf_from_config

logger = logging.getLogger("celestefit.images")


@dataclass(eq=False)
class Image:
    pixels: np.ndarray
    band: int
    wcs: WCS
    psf: PointSpreadFunction
    sigma: Any
    name: str = ""

    def __post_init__(self):
        self.pixels = np.asarray(self.pixels, dtype=float)
        if self.pixels.ndim != 2:
            raise ValueError(f"Image pixels must be 2-D, got shape {self.pixels.shape}")
        sig = np.asarray(self.sigma, dtype=float)
        if sig.ndim not in (0, 2) or (sig.ndim == 2 and sig.shape != self.pixels.shape):
            raise ValueError(f"sigma must be a scalar or match the pixel shape {self.pixels.shape}")
        if not np.all(np.isfinite(sig)) or np.any(sig <= 0):
            raise ValueError(f"sigma must be finite and > 0 for image {self.name or self.band}")

    @property
    def shape(self) -> tuple[int, int]:
        return self.pixels.shape

    def noise(self) -> np.ndarray:
        return np.broadcast_to(np.asarray(self.sigma, dtype=float), self.pixels.shape)

    def world_to_pix(self, ra: float, dec: float) -> tuple[float, float]:
        """0-based (x, y) = (column, row) of a sky position."""
        x, y = self.wcs.all_world2pix(float(ra), float(dec), 0)
        return float(x), float(y)


def read_image_list(list_path: Path, config_dir: Path) -> list[Path]:
    if not list_path.exists():
        raise FileNotFoundError(f"Image list file not found: {list_path}")
    paths: list[Path] = []
    for line in list_path.read_text().splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        p = Path(s).expanduser()
        if not p.is_absolute():
            p = config_dir / p
        paths.append(p.resolve())
    return paths


def _fwhm_from_header(hdr, fp: Path, default_fwhm_pix: float) -> float:
    fwhm_pix = float(default_fwhm_pix)
    v = hdr.get("PEEING", None)
    if v is None:
        v = hdr.get("SEEING", None)
    try:
        if v is not None and np.isfinite(float(v)) and float(v) > 0:
            return max(float(v), 1.0)
    except (TypeError, ValueError):
        pass
    logger.info("PEEING/SEEING missing/invalid in %s; using default_fwhm_pix=%s", fp, str(default_fwhm_pix))
    return max(fwhm_pix, 1.0)


def read_fits_image(fp: Path, bands: Sequence[str], psf_cfg: dict[str, Any] | None = None) -> Image:
    with fits.open(fp, memmap=True) as hdul:
        pixels = np.asarray(hdul[0].data, dtype=np.float64)
        hdr = hdul[0].header

    filt = str(hdr.get("FILTER", "")).strip()
    if not filt:
        raise RuntimeError(f"Missing FILTER in {fp}")
    if filt not in bands:
        raise RuntimeError(f"FILTER {filt!r} in {fp} is not one of the configured bands {list(bands)}")

    skysig = hdr.get("SKYSIG")
    if skysig is None or (not np.isfinite(skysig)) or skysig <= 0:
        raise RuntimeError(f"Bad/Missing SKYSIG in {fp}")

    fwhm = _fwhm_from_header(hdr, fp, float((psf_cfg or {}).get("fwhm_default_pix", 4.0)))
    return Image(
        pixels=np.nan_to_num(pixels, nan=0.0, posinf=0.0, neginf=0.0),
        band=list(bands).index(filt),
        wcs=WCS(hdr),
        psf=psf_from_config(psf_cfg, fwhm_pix=fwhm),
        sigma=float(skysig),
        name=f"{fp.name} band={filt}",
    )


def load_images(
    paths: Sequence[Path],
    bands: Sequence[str],
    psf_cfg: dict[str, Any] | None = None,
    max_workers: int | None = None,
) -> list[Image]:
    """Read FITS frames concurrently; the returned order follows ``paths``."""
    if not paths:
        raise FileNotFoundError("No image paths given")
    workers = max(1, min(len(paths), int(max_workers or os.cpu_count() or 1)))
    logger.info("Reading %d frame(s) with %d worker(s)", len(paths), workers)
    by_path: dict[Path, Image] = {}
    with cf.ThreadPoolExecutor(max_workers=workers) as ex:
        futs = {ex.submit(read_fits_image, Path(fp), bands, psf_cfg): Path(fp) for fp in paths}
        for fut in cf.as_completed(futs):
            by_path[futs[fut]] = fut.result()
    images = [by_path[Path(fp)] for fp in paths]
    for img in images:
        logger.debug("image %s: shape=%s psf=%s", img.name, img.shape, img.psf)
    return images
