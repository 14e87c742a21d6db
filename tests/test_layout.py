"""Tests for the per-source parameter layout."""

import numpy as np
import pytest

from celestefit.layout import Constraint, ParamBlock, ParamLayout, celeste_layout


class TestCelesteLayout:

    def test_sizes_for_five_bands(self, layout):
        assert layout.size == 28
        assert layout.free_size == 27
        assert layout.ref_band == 2

    def test_blocks_are_contiguous_and_disjoint(self, layout):
        seen = np.concatenate([layout.index(name).ravel() for name in layout.names])
        assert sorted(seen.tolist()) == list(range(layout.size))
        free = np.concatenate([layout.free_index(name).ravel() for name in layout.names])
        assert sorted(free.tolist()) == list(range(layout.free_size))

    def test_block_shapes(self, layout):
        assert layout.c1.shape == (4, 2)
        assert layout.c2.shape == (4, 2)
        assert layout.a.shape == (2,)
        assert layout.free_index("a").shape == (1,)

    def test_attribute_access_matches_index(self, layout):
        assert np.array_equal(layout.r1, layout.index("r1"))
        assert layout.c1[1, 0] == layout.index("c1")[1, 0]

    def test_constraints(self, layout):
        assert layout.block("a").constraint is Constraint.SIMPLEX
        assert layout.block("e_scale").constraint is Constraint.POSITIVE
        assert layout.block("e_dev").constraint is Constraint.UNIT
        assert layout.block("u").constraint is Constraint.SCALED

    def test_unknown_block(self, layout):
        with pytest.raises(KeyError):
            layout.index("nope")
        with pytest.raises(AttributeError):
            layout.nope

    def test_other_band_counts(self):
        lay = celeste_layout(n_bands=3)
        assert lay.c1.shape == (2, 2)
        assert lay.ref_band == 1
        with pytest.raises(ValueError):
            celeste_layout(n_bands=1)

    def test_layout_is_immutable(self, layout):
        with pytest.raises(Exception):
            layout.n_bands = 4


class TestParamLayoutValidation:

    def test_duplicate_block(self):
        with pytest.raises(ValueError):
            ParamLayout(blocks=(ParamBlock("x", (1,)), ParamBlock("x", (2,))))

    def test_simplex_needs_two_entries(self):
        with pytest.raises(ValueError):
            ParamLayout(blocks=(ParamBlock("p", (1,), Constraint.SIMPLEX),))

    def test_scaled_needs_nonzero_scale(self):
        with pytest.raises(ValueError):
            ParamLayout(blocks=(ParamBlock("p", (1,), Constraint.SCALED, scale=0.0),))

    def test_equal_layouts_compare_equal(self):
        assert celeste_layout(5) == celeste_layout(5)
        assert celeste_layout(5) != celeste_layout(4)
