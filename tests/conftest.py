from __future__ import annotations

import pytest

from glitch import GlitchGrid
from glitch_bench import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(1000.0)


@pytest.fixture
def make_sketch(clock):
    """Build a silent sketch on the manual clock (uniform partition until the first frame)."""

    def _make(cols: int = 3, rows: int = 3, width: int = 300, height: int = 300,
              seed: int = 3, **kwargs) -> GlitchGrid:
        return GlitchGrid(width, height, cols, rows, seed=seed, clock=clock, **kwargs)

    return _make
