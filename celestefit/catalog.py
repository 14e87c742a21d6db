"""
Catalog entries used to seed the variational parameters.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
import sep

from .images import Image

logger = logging.getLogger("celestefit.catalog")

MAG_ZP = 22.5


@dataclass(frozen=True, eq=False)
class CatalogEntry:
    pos: tuple[float, float]
    is_star: bool
    star_fluxes: np.ndarray
    gal_fluxes: np.ndarray
    gal_frac_dev: float
    gal_ab: float
    gal_angle: float
    gal_scale: float
    objid: str
    thing_id: int

    @property
    def ra(self) -> float:
        return float(self.pos[0])

    @property
    def dec(self) -> float:
        return float(self.pos[1])


def mag_to_flux(m):
    """Magnitudes to nanomaggies."""
    return np.power(10.0, 0.4 * (MAG_ZP - np.asarray(m, dtype=float)))


def flux_to_mag(f):
    f = np.asarray(f, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(f > 0, MAG_ZP - 2.5 * np.log10(np.where(f > 0, f, 1.0)), np.nan)


def fluxes_to_color(f1, f2):
    """mag(f1) - mag(f2) with a shared zero point; NaN if either flux is non-positive."""
    f1 = np.asarray(f1, dtype=float)
    f2 = np.asarray(f2, dtype=float)
    ok = (f1 > 0) & (f2 > 0)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(ok, -2.5 * np.log10(np.where(ok, f1 / np.where(ok, f2, 1.0), 1.0)), np.nan)


def _read_csv_safe(path: Path) -> pd.DataFrame:
    """Read CSV with ID forced to string dtype (keeps leading zeros)."""
    header = pd.read_csv(path, nrows=0)
    str_cols = {c: str for c in header.columns if str(c).strip().lower() == "id"}
    df = pd.read_csv(path, dtype=str_cols) if str_cols else pd.read_csv(path)
    for col in str_cols:
        df[col] = df[col].fillna("")
    return df


def _numeric(df: pd.DataFrame, col: str | None, default: float) -> np.ndarray:
    if col is None:
        return np.full(len(df), float(default), dtype=float)
    v = pd.to_numeric(df[col], errors="coerce").to_numpy(dtype=float)
    return np.where(np.isfinite(v), v, float(default))


def catalog_from_frame(df: pd.DataFrame, bands: Sequence[str]) -> list[CatalogEntry]:
    col_map = {str(c).strip().lower(): str(c) for c in df.columns}
    ra_col = col_map.get("ra")
    dec_col = col_map.get("dec")
    if ra_col is None or dec_col is None:
        raise ValueError("catalog must have RA/DEC columns")

    n = len(df)
    star_flux = np.full((n, len(bands)), np.nan, dtype=float)
    gal_flux = np.full((n, len(bands)), np.nan, dtype=float)
    for b, bn in enumerate(bands):
        fc = col_map.get(f"flux_{bn}".lower())
        if fc is not None:
            star_flux[:, b] = pd.to_numeric(df[fc], errors="coerce").to_numpy(dtype=float)
        gc = col_map.get(f"gal_flux_{bn}".lower())
        gal_flux[:, b] = (
            pd.to_numeric(df[gc], errors="coerce").to_numpy(dtype=float) if gc is not None else star_flux[:, b]
        )

    if "type" in col_map:
        is_star = df[col_map["type"]].astype(str).str.strip().str.upper().to_numpy() == "STAR"
    else:
        is_star = np.zeros(n, dtype=bool)

    frac_dev = _numeric(df, col_map.get("frac_dev"), 0.5)
    ab = _numeric(df, col_map.get("ab"), 0.8)
    theta = _numeric(df, col_map.get("theta"), 0.0)
    re_ = _numeric(df, col_map.get("re"), 1.0)

    id_col = col_map.get("id")
    objids = df[id_col].astype(str).to_numpy() if id_col is not None else np.array([str(i) for i in range(n)])
    thing_col = col_map.get("thing_id")
    if thing_col is not None:
        thing_ids = pd.to_numeric(df[thing_col], errors="raise").to_numpy(dtype=np.int64)
    else:
        thing_ids = np.arange(n, dtype=np.int64)

    if len(set(thing_ids.tolist())) < len(thing_ids):
        raise ValueError("Found one or more duplicate thing ids in catalog")

    ras = pd.to_numeric(df[ra_col], errors="coerce").to_numpy(dtype=float)
    decs = pd.to_numeric(df[dec_col], errors="coerce").to_numpy(dtype=float)
    if not (np.all(np.isfinite(ras)) and np.all(np.isfinite(decs))):
        raise ValueError("catalog has non-finite RA/DEC values")

    return [
        CatalogEntry(
            pos=(float(ras[i]), float(decs[i])),
            is_star=bool(is_star[i]),
            star_fluxes=star_flux[i].copy(),
            gal_fluxes=gal_flux[i].copy(),
            gal_frac_dev=float(frac_dev[i]),
            gal_ab=float(ab[i]),
            gal_angle=float(np.deg2rad(theta[i])),
            gal_scale=float(re_[i]),
            objid=str(objids[i]),
            thing_id=int(thing_ids[i]),
        )
        for i in range(n)
    ]


def load_catalog_csv(path: Path, bands: Sequence[str]) -> list[CatalogEntry]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog not found: {path}")
    catalog = catalog_from_frame(_read_csv_safe(path), bands)
    logger.info("Read %d catalog entries from %s", len(catalog), path)
    return catalog


def backfill_fluxes(catalog: Sequence[CatalogEntry], images: Sequence[Image], r_ap: float = 5.0) -> list[CatalogEntry]:
    """Replace missing/non-finite fluxes with circular-aperture fluxes.

    Star and galaxy fluxes of a band are measured together on the first image
    of that band. Entries are never modified; updated copies are returned.
    """
    if not catalog:
        return []
    star = np.array([e.star_fluxes for e in catalog], dtype=float)
    gal = np.array([e.gal_fluxes for e in catalog], dtype=float)
    n_bands = star.shape[1]
    n_filled = 0

    seen: set[int] = set()
    for img in images:
        b = int(img.band)
        if b in seen or not (0 <= b < n_bands):
            continue
        seen.add(b)
        missing = ~np.isfinite(star[:, b]) | ~np.isfinite(gal[:, b])
        if not np.any(missing):
            continue
        data = np.ascontiguousarray(img.pixels, dtype=np.float64)
        err = np.ascontiguousarray(img.noise(), dtype=np.float64)
        xy = np.array([img.world_to_pix(e.ra, e.dec) for e, m in zip(catalog, missing) if m], dtype=float)
        f_ap, _ferr, _flag = sep.sum_circle(data, xy[:, 0], xy[:, 1], float(r_ap), err=err)
        f_ap = np.where(np.isfinite(f_ap), f_ap, 0.0)
        rows = np.flatnonzero(missing)
        for k, i in enumerate(rows):
            if not np.isfinite(star[i, b]):
                star[i, b] = f_ap[k]
            if not np.isfinite(gal[i, b]):
                gal[i, b] = f_ap[k]
        n_filled += int(rows.size)

    if n_filled:
        logger.info("Backfilled %d (source, band) flux value(s) from r_ap=%.1f apertures", n_filled, float(r_ap))
    star = np.where(np.isfinite(star), star, 0.0)
    gal = np.where(np.isfinite(gal), gal, 0.0)
    return [
        dataclasses.replace(e, star_fluxes=star[i].copy(), gal_fluxes=gal[i].copy())
        for i, e in enumerate(catalog)
    ]


def max_star_flux(entry: CatalogEntry) -> float:
    f = np.asarray(entry.star_fluxes, dtype=float)
    f = f[np.isfinite(f)]
    return float(f.max()) if f.size else -math.inf
