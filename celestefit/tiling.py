from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from .errors import TrimmingExhausted
from .images import Image
from .layout import ParamLayout
from .model_params import GALAXY, STAR, ModelParams, source_fluxes

logger = logging.getLogger("celestefit.tiling")


@dataclass(frozen=True)
class Tile:
    """Half-open pixel block ``pixels[h0:h1, w0:w1]`` of one image."""

    image_index: int
    h0: int
    h1: int
    w0: int
    w1: int
    # Linear offset of the first pixel in the parent image: h0 * W + w0.
    offset: int

    @property
    def shape(self) -> tuple[int, int]:
        return self.h1 - self.h0, self.w1 - self.w0

    def slices(self) -> tuple[slice, slice]:
        return slice(self.h0, self.h1), slice(self.w0, self.w1)


@dataclass(frozen=True, eq=False)
class TiledImage:
    image: Image
    image_index: int
    tile_width: int
    tiles: tuple[Tile, ...]

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self):
        return iter(self.tiles)

    def pixels(self, tile: Tile) -> np.ndarray:
        return self.image.pixels[tile.slices()]

    def subset(self, tiles: Iterable[Tile]) -> "TiledImage":
        """New TiledImage restricted to ``tiles`` (kept in row-major order)."""
        wanted = set(tiles)
        unknown = wanted.difference(self.tiles)
        if unknown:
            raise ValueError(f"{len(unknown)} tile(s) do not belong to image {self.image_index}")
        return TiledImage(
            image=self.image,
            image_index=self.image_index,
            tile_width=self.tile_width,
            tiles=tuple(t for t in self.tiles if t in wanted),
        )


def _tile_edges(n: int, tile_width: int) -> list[tuple[int, int]]:
    return [(i, min(i + tile_width, n)) for i in range(0, n, tile_width)]


def break_image_into_tiles(image: Image, tile_width: int = 20, image_index: int = 0) -> TiledImage:
    tile_width = int(tile_width)
    if tile_width < 1:
        raise ValueError(f"tile_width must be >= 1, got {tile_width}")
    H, W = image.shape
    tiles = tuple(
        Tile(image_index=int(image_index), h0=h0, h1=h1, w0=w0, w1=w1, offset=h0 * W + w0)
        for h0, h1 in _tile_edges(H, tile_width)
        for w0, w1 in _tile_edges(W, tile_width)
    )
    return TiledImage(image=image, image_index=int(image_index), tile_width=tile_width, tiles=tiles)


def break_blob_into_tiles(images: Sequence[Image], tile_width: int = 20) -> list[TiledImage]:
    return [break_image_into_tiles(img, tile_width, image_index=i) for i, img in enumerate(images)]


# ---------------------------------------------------------------------------
#  Expected contribution of one source
# ---------------------------------------------------------------------------

def galaxy_widening(e_scale: float, fwhm: float) -> float:
    return math.sqrt(1.0 + (float(e_scale) / float(fwhm)) ** 2)


def expected_brightness(vs, layout: ParamLayout, image: Image, rows, cols) -> np.ndarray:
    """Expected source counts on the pixel grid ``rows x cols`` of ``image``.

    E[p] = a_star * F_star * psf(d) + a_gal * F_gal * psf(d / k) / k^2, with
    k = sqrt(1 + (e_scale / fwhm)^2) and d the offset from the source center.
    """
    vs = np.asarray(vs, dtype=float)
    ra, dec = vs[layout.u]
    x, y = image.world_to_pix(ra, dec)
    a = vs[layout.a]
    b = int(image.band)
    f_star = source_fluxes(vs, layout, STAR)[b]
    f_gal = source_fluxes(vs, layout, GALAXY)[b]
    k = galaxy_widening(vs[layout.e_scale[0]], image.psf.fwhm)

    dy = np.asarray(rows, dtype=float)[:, None] - y
    dx = np.asarray(cols, dtype=float)[None, :] - x
    star = a[STAR] * f_star * image.psf.evaluate(dx, dy)
    gal = a[GALAXY] * f_gal * image.psf.evaluate(dx / k, dy / k) / (k * k)
    return star + gal


def _support_box(vs, layout: ParamLayout, image: Image) -> tuple[float, float, float] | None:
    vs = np.asarray(vs, dtype=float)
    ra, dec = vs[layout.u]
    x, y = image.world_to_pix(ra, dec)
    if not (np.isfinite(x) and np.isfinite(y)):
        return None
    k = galaxy_widening(vs[layout.e_scale[0]], image.psf.fwhm)
    return x, y, image.psf.radius * max(k, 1.0)


def trim_tiled_image(vs, layout: ParamLayout, tiled: TiledImage, noise_fraction: float = 0.1) -> TiledImage:
    """Tiles of one image where some pixel has E[p] > noise_fraction * sigma[p]."""
    box = _support_box(vs, layout, tiled.image)
    if box is None:
        return tiled.subset(())
    x, y, R = box
    sigma = tiled.image.noise()
    thresh = float(noise_fraction)
    kept = []
    for t in tiled.tiles:
        # Only tiles touching the support box can see the source.
        if t.w1 - 1 < x - R or t.w0 > x + R or t.h1 - 1 < y - R or t.h0 > y + R:
            continue
        e = expected_brightness(vs, layout, tiled.image, np.arange(t.h0, t.h1), np.arange(t.w0, t.w1))
        if np.any(e > thresh * sigma[t.slices()]):
            kept.append(t)
    return tiled.subset(kept)


def trim_source_tiles(
    s: int,
    mp: ModelParams,
    tiled_images: Sequence[TiledImage],
    noise_fraction: float = 0.1,
) -> list[TiledImage]:
    """Per-image tile subsets relevant to source ``s``; images with no surviving tile are dropped."""
    if not (0 <= int(s) < mp.S):
        raise ValueError(f"source {s} out of range for {mp.S} source(s)")
    if not (np.isfinite(noise_fraction) and noise_fraction >= 0):
        raise ValueError(f"noise_fraction must be finite and >= 0, got {noise_fraction}")
    vs = mp.vp[int(s)]
    out = []
    n_total = 0
    for tiled in tiled_images:
        trimmed = trim_tiled_image(vs, mp.layout, tiled, noise_fraction)
        n_total += len(tiled)
        if len(trimmed):
            out.append(trimmed)
    n_kept = sum(len(t) for t in out)
    if n_kept == 0:
        raise TrimmingExhausted(int(s))
    logger.debug("source %d: kept %d/%d tile(s) in %d image(s)", int(s), n_kept, n_total, len(out))
    return out


def write_tile_index(tiled_images: Sequence[TiledImage], out_dir: Path) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    rows = []
    for tiled in tiled_images:
        H, W = tiled.image.shape
        for k, t in enumerate(tiled.tiles):
            rows.append(
                dict(
                    image_index=int(tiled.image_index),
                    image_name=str(tiled.image.name),
                    band=int(tiled.image.band),
                    tile_index=int(k),
                    tile_tag=f"i{tiled.image_index:03d}_h{t.h0:05d}_w{t.w0:05d}",
                    h0=int(t.h0),
                    h1=int(t.h1),
                    w0=int(t.w0),
                    w1=int(t.w1),
                    offset=int(t.offset),
                    image_height=int(H),
                    image_width=int(W),
                )
            )

    tile_csv = out_dir / "tiles.csv"
    tile_json = out_dir / "tiles.json"
    pd.DataFrame(rows).to_csv(tile_csv, index=False)
    tile_json.write_text(json.dumps(rows, indent=2))

    logger.info("Images: %d | TILE_WIDTH: %s", len(tiled_images),
                ",".join(sorted({str(t.tile_width) for t in tiled_images})) or "-")
    logger.info("Total tiles: %d", len(rows))
    logger.info("Wrote: %s", tile_csv)
    logger.info("Wrote: %s", tile_json)

    return tile_json
