"""
Per-source variational parameter layout.

A ``ParamLayout`` maps block names to offsets in the constrained parameter
vector and in the matching unconstrained ("free") vector. Every source vector
in a run shares one layout.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np


class Constraint(str, Enum):
    FREE = "free"
    SCALED = "scaled"
    POSITIVE = "positive"
    UNIT = "unit"
    SIMPLEX = "simplex"


@dataclass(frozen=True)
class ParamBlock:
    name: str
    shape: tuple[int, ...]
    constraint: Constraint = Constraint.FREE
    # Only used by SCALED blocks: constrained = scale * free.
    scale: float = 1.0

    @property
    def size(self) -> int:
        return int(math.prod(self.shape))

    @property
    def free_shape(self) -> tuple[int, ...]:
        if self.constraint is Constraint.SIMPLEX:
            return (self.shape[0] - 1,)
        return self.shape

    @property
    def free_size(self) -> int:
        return int(math.prod(self.free_shape))


@dataclass(frozen=True)
class ParamLayout:
    blocks: tuple[ParamBlock, ...]
    n_bands: int = 5
    n_types: int = 2
    _offsets: dict[str, int] = field(init=False, repr=False, compare=False)
    _free_offsets: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        offsets: dict[str, int] = {}
        free_offsets: dict[str, int] = {}
        off = 0
        free_off = 0
        for blk in self.blocks:
            if blk.name in offsets:
                raise ValueError(f"Duplicate parameter block: {blk.name}")
            if blk.size <= 0:
                raise ValueError(f"Parameter block {blk.name} has no entries")
            if blk.constraint is Constraint.SIMPLEX and (len(blk.shape) != 1 or blk.shape[0] < 2):
                raise ValueError(f"Simplex block {blk.name} must be 1-D with at least 2 entries")
            if blk.constraint is Constraint.SCALED and not (np.isfinite(blk.scale) and blk.scale != 0):
                raise ValueError(f"Scaled block {blk.name} needs a finite non-zero scale")
            offsets[blk.name] = off
            free_offsets[blk.name] = free_off
            off += blk.size
            free_off += blk.free_size
        object.__setattr__(self, "_offsets", offsets)
        object.__setattr__(self, "_free_offsets", free_offsets)

    @property
    def size(self) -> int:
        return sum(b.size for b in self.blocks)

    @property
    def free_size(self) -> int:
        return sum(b.free_size for b in self.blocks)

    @property
    def names(self) -> list[str]:
        return [b.name for b in self.blocks]

    @property
    def ref_band(self) -> int:
        return (self.n_bands - 1) // 2

    def block(self, name: str) -> ParamBlock:
        for blk in self.blocks:
            if blk.name == name:
                return blk
        raise KeyError(f"Unknown parameter block: {name}")

    def index(self, name: str) -> np.ndarray:
        blk = self.block(name)
        start = self._offsets[name]
        return np.arange(start, start + blk.size).reshape(blk.shape)

    def free_index(self, name: str) -> np.ndarray:
        blk = self.block(name)
        start = self._free_offsets[name]
        return np.arange(start, start + blk.free_size).reshape(blk.free_shape)

    def __getattr__(self, name: str) -> np.ndarray:
        # ids-style access: layout.c1[b, i]
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self.index(name)
        except KeyError:
            raise AttributeError(name) from None


def celeste_layout(n_bands: int = 5, position_scale: float = 1.0) -> ParamLayout:
    """Standard star/galaxy layout for ``n_bands`` bands."""
    if int(n_bands) < 2:
        raise ValueError(f"n_bands must be >= 2, got {n_bands}")
    n_colors = int(n_bands) - 1
    blocks = (
        ParamBlock("u", (2,), Constraint.SCALED, scale=float(position_scale)),
        ParamBlock("e_dev", (1,), Constraint.UNIT),
        ParamBlock("e_axis", (1,), Constraint.UNIT),
        ParamBlock("e_angle", (1,), Constraint.FREE),
        ParamBlock("e_scale", (1,), Constraint.POSITIVE),
        ParamBlock("a", (2,), Constraint.SIMPLEX),
        ParamBlock("r1", (2,), Constraint.FREE),
        ParamBlock("r2", (2,), Constraint.POSITIVE),
        ParamBlock("c1", (n_colors, 2), Constraint.FREE),
        ParamBlock("c2", (n_colors, 2), Constraint.POSITIVE),
    )
    return ParamLayout(blocks=blocks, n_bands=int(n_bands), n_types=2)
