from __future__ import annotations

import numpy as np
import astropy.units as u
from astropy.coordinates import SkyCoord

from .errors import NoMatchFound


def match_position(ras, decs, ra: float, dec: float, maxdist_arcsec: float) -> int:
    """Index of the first catalog position closer than ``maxdist_arcsec`` to (ra, dec)."""
    ras = np.atleast_1d(np.asarray(ras, dtype=float))
    decs = np.atleast_1d(np.asarray(decs, dtype=float))
    if ras.shape != decs.shape:
        raise ValueError(f"ras and decs must have the same length ({ras.size} != {decs.size})")
    if ras.size == 0:
        raise NoMatchFound(f"no catalog positions to match against ({ra}, {dec})")
    cat = SkyCoord(ra=ras * u.deg, dec=decs * u.deg)
    target = SkyCoord(ra=float(ra) * u.deg, dec=float(dec) * u.deg)
    sep_arcsec = cat.separation(target).to_value(u.arcsec)
    hits = np.flatnonzero(sep_arcsec < float(maxdist_arcsec))
    if hits.size == 0:
        raise NoMatchFound(
            f"no catalog entry within {maxdist_arcsec} arcsec of ({ra}, {dec}); "
            f"nearest is {float(np.min(sep_arcsec)):.3f} arcsec"
        )
    return int(hits[0])
