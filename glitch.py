#!/usr/bin/env python3
"""
  ▚  G L I T C H   G R I D  ▞
  A noise-warped grid that breaks apart when you touch it.

  Column widths and row heights breathe with 2-D lattice noise. While the
  music is paused, clicking a cell fills or empties it. While it plays,
  clicking a filled cell sets off a glitch wave that ripples outward
  through neighbouring filled cells, splits the picture into offset colour
  channels and fires a sample through an echo. Loud spikes in the music
  make random cells flash.

  Controls:
    q         quit               SPACE     play / pause
    c         clear              mouse     toggle cell / glitch
    +/-       speed              [ / ]     strength
    m         mute / unmute      , / .     volume

  The status bar widgets (Play, Clear, sliders) are clickable as well.
  Sketch events are logged to glitch_events.csv beside this script.
"""

from __future__ import annotations

import argparse
import curses
import heapq
import math
import time
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import IO, Callable, ClassVar

import numpy as np
from numpy.typing import ArrayLike, NDArray

from glitch_music import Clip, GlitchMusicEngine, synth_beat_loop, synth_glitch_blips

# ── Grid & layout ───────────────────────────────────────────────────────
DEFAULT_COLS: int = 15
DEFAULT_ROWS: int = 10
CONTRAST: float = 3.0          # power applied to noise; >1 exaggerates
SIZE_EPSILON: float = 1e-4     # keeps every cell strictly positive
NOISE_STEP: float = 0.1        # noise-space distance between neighbours
ROW_TIME_OFFSET: float = 100.0  # decorrelates rows from columns

# ── Timed effects (wall-clock milliseconds) ─────────────────────────────
GLITCH_DURATION_MS: float = 1000.0
OVERLAY_DURATION_MS: float = 300.0
STAGGER_MS: float = 40.0
SPREAD_DEPTH: int = 3

# ── Beats ───────────────────────────────────────────────────────────────
BEAT_RISE: float = 0.1
BEAT_LEVEL_CEILING: float = 0.4
BEAT_MAX_INTENSITY: int = 15
FLASH_FRAMES: int = 4

# ── Audio reactions ─────────────────────────────────────────────────────
ECHO_MIX: float = 0.25
ECHO_FEEDBACK: float = 0.6
ECHO_DELAY_MS: float = 800.0
ECHO_HOLD_MS: float = 300.0
FADE_SECS: float = 0.5

# ── Widgets: (min, max, default, step) ──────────────────────────────────
SPEED_RANGE: tuple[float, float, float, float] = (0.0, 0.05, 0.01, 0.001)
STRENGTH_RANGE: tuple[float, float, float, float] = (0.0, 1.0, 0.5, 0.01)
SLIDER_TRACK: int = 10

# ── Colours (RGB) ───────────────────────────────────────────────────────
RGB = tuple[int, int, int]
WHITE: RGB = (255, 255, 255)
BLACK: RGB = (0, 0, 0)
RED: RGB = (255, 0, 0)
GREEN: RGB = (0, 255, 0)
BLUE: RGB = (0, 0, 255)
STROKE: RGB = (180, 180, 180)
GLITCH_COLORS: tuple[RGB, ...] = (RED, GREEN, BLUE)

# Jitter as a fraction of canvas width (10px / 5px on a 1200px canvas)
GLITCH_JITTER_FRAC: float = 1.0 / 120.0
SPLIT_JITTER_FRAC: float = 1.0 / 240.0

PULSE_BASE: float = 1.1
PULSE_DEPTH: float = 0.2
PULSE_RATE: float = 0.5

FRAME_DELAY: float = 1.0 / 30.0
LOG_EVERY: int = 30          # frames between heartbeat rows in the event log

# ── Half-block characters ───────────────────────────────────────────────
UPPER_HALF = "▀"  # ▀  fg = top pixel, bg = bottom pixel

# ── Terminal palette: canvas colours → xterm-256 indices ────────────────
PALETTE_RGB: NDArray = np.array([
    BLACK, WHITE, RED, GREEN, BLUE,
    (255, 255, 0), (255, 0, 255), (0, 255, 255),
    STROKE,
], dtype=np.int32)
PALETTE_XTERM: list[int] = [16, 231, 196, 46, 21, 226, 201, 51, 250]
# Fallback for 8-colour terminals (grey has no slot, shows as white)
PALETTE_BASIC: list[int] = [
    curses.COLOR_BLACK, curses.COLOR_WHITE, curses.COLOR_RED, curses.COLOR_GREEN,
    curses.COLOR_BLUE, curses.COLOR_YELLOW, curses.COLOR_MAGENTA, curses.COLOR_CYAN,
    curses.COLOR_WHITE,
]

LOG_PATH = Path(__file__).resolve().parent / "glitch_events.csv"

Cell = tuple[int, int]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


# ═══════════════════════════════════════════════════════════════════════
#  Noise
# ═══════════════════════════════════════════════════════════════════════

PERLIN_YWRAPB: int = 4
PERLIN_YWRAP: int = 1 << PERLIN_YWRAPB
PERLIN_SIZE: int = 4095
NOISE_OCTAVES: int = 4
NOISE_FALLOFF: float = 0.5


def _scaled_cosine(f: NDArray[np.float64]) -> NDArray[np.float64]:
    return 0.5 * (1.0 - np.cos(f * math.pi))


class PerlinNoise:
    """
    Seeded lattice noise in the Processing style: random values on a
    wrapped 1-D lattice, cosine-interpolated in x and y, summed over
    octaves with halving amplitude.

    Deterministic for a seed, continuous in both inputs, and always in
    [0, 1) (the octave amplitudes sum to 1 - 2**-octaves).
    """

    def __init__(self, seed: int | None = None, octaves: int = NOISE_OCTAVES,
                 falloff: float = NOISE_FALLOFF) -> None:
        rng = np.random.default_rng(seed)
        self._lattice: NDArray[np.float64] = rng.random(PERLIN_SIZE + 1)
        self.octaves = octaves
        self.falloff = falloff

    def sample(self, x: ArrayLike, y: ArrayLike = 0.0) -> NDArray[np.float64]:
        """Vectorised noise at (x, y); inputs broadcast against each other."""
        xs, ys = np.broadcast_arrays(np.abs(np.asarray(x, dtype=np.float64)),
                                     np.abs(np.asarray(y, dtype=np.float64)))
        xi = np.floor(xs).astype(np.int64)
        yi = np.floor(ys).astype(np.int64)
        xf = xs - xi
        yf = ys - yi

        p = self._lattice
        r = np.zeros(xs.shape, dtype=np.float64)
        ampl = 0.5
        for _ in range(self.octaves):
            of = xi + (yi << PERLIN_YWRAPB)
            rxf = _scaled_cosine(xf)
            ryf = _scaled_cosine(yf)

            n1 = p[of & PERLIN_SIZE]
            n1 = n1 + rxf * (p[(of + 1) & PERLIN_SIZE] - n1)
            n2 = p[(of + PERLIN_YWRAP) & PERLIN_SIZE]
            n2 = n2 + rxf * (p[(of + PERLIN_YWRAP + 1) & PERLIN_SIZE] - n2)
            n1 = n1 + ryf * (n2 - n1)

            r += n1 * ampl
            ampl *= self.falloff

            xi = xi << 1
            xf = xf * 2.0
            yi = yi << 1
            yf = yf * 2.0
            xi = np.where(xf >= 1.0, xi + 1, xi)
            xf = np.where(xf >= 1.0, xf - 1.0, xf)
            yi = np.where(yf >= 1.0, yi + 1, yi)
            yf = np.where(yf >= 1.0, yf - 1.0, yf)

        return r

    def __call__(self, x: float, y: float = 0.0) -> float:
        return float(self.sample(x, y))


# ═══════════════════════════════════════════════════════════════════════
#  Noise partition
# ═══════════════════════════════════════════════════════════════════════

def sizes_from_samples(samples: ArrayLike, contrast: float, strength: float,
                       total_extent: float) -> NDArray[np.float64]:
    """Normalise noise samples into positive sizes summing to total_extent.

    w_k = n_k ** contrast * strength + SIZE_EPSILON; size_k = w_k / sum(w) * total.
    With zero strength every weight is SIZE_EPSILON: a uniform split.
    """
    n = np.clip(np.asarray(samples, dtype=np.float64), 0.0, 1.0)
    weights = np.power(n, contrast) * max(0.0, strength) + SIZE_EPSILON
    return weights / weights.sum() * total_extent


def compute_sizes(count: int, sample: Callable[[int], float], contrast: float,
                  strength: float, total_extent: float) -> NDArray[np.float64]:
    """Sizes for `count` slots, sampling noise once per slot index."""
    samples = np.fromiter((sample(k) for k in range(count)), dtype=np.float64, count=count)
    return sizes_from_samples(samples, contrast, strength, total_extent)


class Partition:
    """Column widths and row heights of the canvas, refreshed every frame."""

    def __init__(self, cols: int, rows: int, width: float, height: float) -> None:
        self.cols = cols
        self.rows = rows
        self.width = float(width)
        self.height = float(height)
        self.col_widths: NDArray[np.float64] = np.full(cols, self.width / cols)
        self.row_heights: NDArray[np.float64] = np.full(rows, self.height / rows)

    def recompute(self, noise: PerlinNoise, t: float, strength: float,
                  contrast: float = CONTRAST) -> None:
        col_noise = noise.sample(np.arange(self.cols) * NOISE_STEP, t)
        self.col_widths = compute_sizes(
            self.cols, lambda k: col_noise[k], contrast, strength, self.width)
        row_noise = noise.sample(np.arange(self.rows) * NOISE_STEP, t + ROW_TIME_OFFSET)
        self.row_heights = compute_sizes(
            self.rows, lambda k: row_noise[k], contrast, strength, self.height)

    def col_offsets(self) -> NDArray[np.float64]:
        """Left edge of every column."""
        return np.concatenate(([0.0], np.cumsum(self.col_widths)[:-1]))

    def row_offsets(self) -> NDArray[np.float64]:
        """Top edge of every row."""
        return np.concatenate(([0.0], np.cumsum(self.row_heights)[:-1]))

    def locate(self, x: float, y: float) -> Cell | None:
        """Cell under a canvas point, or None when the point misses every cell."""
        ci = _scan(self.col_widths, x)
        rj = _scan(self.row_heights, y)
        if ci < 0 or rj < 0:
            return None
        return ci, rj

    def cell_rect(self, i: int, j: int) -> tuple[float, float, float, float]:
        return (float(self.col_offsets()[i]), float(self.row_offsets()[j]),
                float(self.col_widths[i]), float(self.row_heights[j]))


def _scan(sizes: NDArray[np.float64], pos: float) -> int:
    acc = 0.0
    for k, size in enumerate(sizes.tolist()):
        if acc <= pos < acc + size:
            return k
        acc += size
    return -1


# ═══════════════════════════════════════════════════════════════════════
#  Grid state
# ═══════════════════════════════════════════════════════════════════════

class GridState:
    """Fill state and flash countdowns, indexed [column, row]."""

    def __init__(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows
        self.filled: NDArray[np.bool_] = np.zeros((cols, rows), dtype=np.bool_)
        self.flash: NDArray[np.int32] = np.zeros((cols, rows), dtype=np.int32)

    def in_bounds(self, i: int, j: int) -> bool:
        return 0 <= i < self.cols and 0 <= j < self.rows

    def is_filled(self, i: int, j: int) -> bool:
        return bool(self.filled[i, j])

    def toggle(self, i: int, j: int) -> None:
        self.filled[i, j] = not self.filled[i, j]

    def set_flash(self, i: int, j: int, frames: int) -> None:
        self.flash[i, j] = max(0, frames)

    def tick_flash(self) -> None:
        np.subtract(self.flash, 1, out=self.flash, where=self.flash > 0)

    def clear(self) -> None:
        self.filled[:] = False

    def filled_count(self) -> int:
        return int(self.filled.sum())

    def flashing_count(self) -> int:
        return int((self.flash > 0).sum())


# ═══════════════════════════════════════════════════════════════════════
#  Timer queue (single logical thread)
# ═══════════════════════════════════════════════════════════════════════

class TimerHandle:
    """A scheduled callback; cancel() makes it a no-op when it comes due."""

    __slots__ = ("due_ms", "callback", "cancelled")

    def __init__(self, due_ms: float, callback: Callable[[], None]) -> None:
        self.due_ms = due_ms
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class TimerQueue:
    """
    Deferred callbacks ordered by due time. The main loop drains due
    callbacks between frames, so callbacks never overlap a frame tick.
    Callbacks with the same due time run in scheduling order.
    """

    def __init__(self, clock: Callable[[], float] = monotonic_ms) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq: int = 0

    def schedule(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._clock() + delay_ms, callback)
        heapq.heappush(self._heap, (handle.due_ms, self._seq, handle))
        self._seq += 1
        return handle

    def run_due(self) -> int:
        """Run every callback due by now. Returns how many ran."""
        now = self._clock()
        ran = 0
        while self._heap and self._heap[0][0] <= now:
            _, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            handle.callback()
            ran += 1
        return ran

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)

    def clear(self) -> None:
        self._heap.clear()


# ═══════════════════════════════════════════════════════════════════════
#  Timed effect windows
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class GlitchSession:
    """The live glitch: which cells are glitching and since when.

    `generation` changes whenever the session restarts or ends; wave steps
    scheduled under an older generation do nothing.
    """

    duration_ms: float = GLITCH_DURATION_MS
    active: bool = False
    start_ms: float = 0.0
    generation: int = 0
    cells: set[Cell] = field(default_factory=set)

    def begin(self, now_ms: float) -> None:
        self.generation += 1
        self.cells.clear()
        self.active = True
        self.start_ms = now_ms

    def expire(self, now_ms: float) -> bool:
        if self.active and now_ms > self.start_ms + self.duration_ms:
            self.active = False
            self.cells.clear()
            self.generation += 1
            return True
        return False

    def is_current(self, generation: int) -> bool:
        return self.active and generation == self.generation


@dataclass
class OverlayWindow:
    """Channel-split window, timed independently of the glitch session."""

    duration_ms: float = OVERLAY_DURATION_MS
    active: bool = False
    start_ms: float = 0.0

    def begin(self, now_ms: float) -> None:
        self.active = True
        self.start_ms = now_ms

    def expire(self, now_ms: float) -> bool:
        if self.active and now_ms - self.start_ms >= self.duration_ms:
            self.active = False
            return True
        return False

    def showing(self, now_ms: float) -> bool:
        return self.active and now_ms - self.start_ms < self.duration_ms


# ═══════════════════════════════════════════════════════════════════════
#  Glitch spread
# ═══════════════════════════════════════════════════════════════════════

NEIGHBOR_OFFSETS: tuple[Cell, ...] = tuple(
    (di, dj) for di in (-1, 0, 1) for dj in (-1, 0, 1) if di != 0 or dj != 0
)


class GlitchSpreader:
    """
    Ripples a glitch outward from a cell, one ring per stagger interval.

    Only filled cells carry the wave; empty cells stop it. A cell may be
    reached from several directions, the session's cell set keeps it once.
    """

    def __init__(self, grid: GridState, session: GlitchSession, timers: TimerQueue,
                 stagger_ms: float = STAGGER_MS) -> None:
        self.grid = grid
        self.session = session
        self.timers = timers
        self.stagger_ms = stagger_ms

    def spread(self, origin: Cell, max_depth: int = SPREAD_DEPTH) -> None:
        self._visit(origin[0], origin[1], max_depth, self.session.generation)

    def _visit(self, i: int, j: int, depth: int, generation: int) -> None:
        if not self.session.is_current(generation):
            return
        if depth <= 0 or not self.grid.in_bounds(i, j) or not self.grid.is_filled(i, j):
            return
        self.session.cells.add((i, j))
        if depth - 1 <= 0:
            return
        self.timers.schedule(
            self.stagger_ms, lambda: self._expand(i, j, depth - 1, generation)
        )

    def _expand(self, i: int, j: int, depth: int, generation: int) -> None:
        for di, dj in NEIGHBOR_OFFSETS:
            self._visit(i + di, j + dj, depth, generation)


# ═══════════════════════════════════════════════════════════════════════
#  Beat detection
# ═══════════════════════════════════════════════════════════════════════

class BeatDetector:
    """Rising-edge spike detector on a loudness stream."""

    def __init__(self, rise: float = BEAT_RISE, ceiling: float = BEAT_LEVEL_CEILING,
                 max_intensity: int = BEAT_MAX_INTENSITY) -> None:
        self.rise = rise
        self.ceiling = ceiling
        self.max_intensity = max_intensity
        self.last_level: float = 0.0

    def intensity(self, level: float) -> int:
        """floor(map(level, 0, ceiling, 0, max)), clamped to [0, max]."""
        clamped = max(0.0, min(self.ceiling, level))
        return min(self.max_intensity, int(math.floor(clamped / self.ceiling * self.max_intensity)))

    def on_level(self, level: float) -> int:
        """Feed one level sample. Returns the beat intensity, 0 if no beat."""
        fired = level - self.last_level > self.rise
        self.last_level = level
        return self.intensity(level) if fired else 0


# ═══════════════════════════════════════════════════════════════════════
#  Render priority
# ═══════════════════════════════════════════════════════════════════════

class CellLook(IntEnum):
    NORMAL = 0
    INVERTED = 1
    GLITCH = 2
    FLASH = 3


def resolve_looks(flash: NDArray[np.int32], glitch_mask: NDArray[np.bool_],
                  session_active: bool) -> NDArray[np.int8]:
    """Per-cell look from an ordered rule table; the first matching rule wins."""
    rules: list[tuple[NDArray[np.bool_], CellLook]] = [
        (flash > 0, CellLook.FLASH),
        (glitch_mask, CellLook.GLITCH),
        (np.full(glitch_mask.shape, session_active, dtype=np.bool_), CellLook.INVERTED),
    ]
    return np.select(
        [cond for cond, _ in rules], [int(look) for _, look in rules],
        default=int(CellLook.NORMAL),
    ).astype(np.int8)


# ═══════════════════════════════════════════════════════════════════════
#  Canvas
# ═══════════════════════════════════════════════════════════════════════

BLEND_REPLACE = "replace"
BLEND_ADD = "add"


class Canvas:
    """RGB framebuffer (height × width × 3, uint8) with p5-like primitives."""

    def __init__(self, width: int, height: int, stroke: RGB = STROKE) -> None:
        self.pixels: NDArray[np.uint8] = np.zeros((height, width, 3), dtype=np.uint8)
        self.stroke = stroke

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def background(self, color: RGB) -> None:
        self.pixels[:] = color

    def _box(self, x: float, y: float, w: float, h: float) -> tuple[int, int, int, int] | None:
        x0 = max(0, int(round(x)))
        y0 = max(0, int(round(y)))
        x1 = min(self.width, int(round(x + w)))
        y1 = min(self.height, int(round(y + h)))
        if x1 <= x0 or y1 <= y0:
            return None
        return x0, y0, x1, y1

    def _outline(self, x: float, y: float, w: float, h: float) -> None:
        rx0, ry0 = int(round(x)), int(round(y))
        rx1, ry1 = int(round(x + w)) - 1, int(round(y + h)) - 1
        box = self._box(x, y, w, h)
        if box is None:
            return
        x0, y0, x1, y1 = box
        px = self.pixels
        if 0 <= ry0 < self.height:
            px[ry0, x0:x1] = self.stroke
        if 0 <= ry1 < self.height:
            px[ry1, x0:x1] = self.stroke
        if 0 <= rx0 < self.width:
            px[y0:y1, rx0] = self.stroke
        if 0 <= rx1 < self.width:
            px[y0:y1, rx1] = self.stroke

    def draw_filled_rect(self, x: float, y: float, w: float, h: float, color: RGB) -> None:
        box = self._box(x, y, w, h)
        if box is None:
            return
        x0, y0, x1, y1 = box
        self.pixels[y0:y1, x0:x1] = color
        self._outline(x, y, w, h)

    def draw_unfilled_rect(self, x: float, y: float, w: float, h: float) -> None:
        self._outline(x, y, w, h)

    def capture_snapshot(self) -> NDArray[np.uint8]:
        return self.pixels.copy()

    @staticmethod
    def make_image_from_channel(snapshot: NDArray[np.uint8], channel: int) -> NDArray[np.uint8]:
        """Image keeping only one colour channel of the snapshot."""
        img = np.zeros_like(snapshot)
        img[..., channel] = snapshot[..., channel]
        return img

    def draw_image(self, img: NDArray[np.uint8], x: float, y: float,
                   blend: str = BLEND_REPLACE) -> None:
        """Blit img with its top-left at (x, y), clipped to the canvas."""
        ox, oy = int(round(x)), int(round(y))
        ih, iw = img.shape[:2]
        dx0, dy0 = max(0, ox), max(0, oy)
        dx1, dy1 = min(self.width, ox + iw), min(self.height, oy + ih)
        if dx1 <= dx0 or dy1 <= dy0:
            return
        src = img[dy0 - oy:dy1 - oy, dx0 - ox:dx1 - ox]
        dst = self.pixels[dy0:dy1, dx0:dx1]
        if blend == BLEND_ADD:
            summed = dst.astype(np.uint16) + src
            np.minimum(summed, 255, out=summed)
            dst[:] = summed.astype(np.uint8)
        else:
            dst[:] = src


# ═══════════════════════════════════════════════════════════════════════
#  Widgets
# ═══════════════════════════════════════════════════════════════════════

class Slider:
    """Stepped value in [minimum, maximum], drawn as a text track."""

    def __init__(self, label: str, minimum: float, maximum: float,
                 default: float, step: float) -> None:
        self.label = label
        self.minimum = minimum
        self.maximum = maximum
        self.step = step
        self.x: int = 0
        self._value: float = self._snap(default)

    def _snap(self, v: float) -> float:
        v = max(self.minimum, min(self.maximum, v))
        if self.step > 0:
            v = self.minimum + round((v - self.minimum) / self.step) * self.step
        return round(max(self.minimum, min(self.maximum, v)), 10)

    def value(self) -> float:
        return self._value

    def set_value(self, v: float) -> None:
        self._value = self._snap(v)

    def nudge(self, steps: int) -> None:
        self.set_value(self._value + steps * self.step)

    def fraction(self) -> float:
        span = self.maximum - self.minimum
        return 0.0 if span <= 0 else (self._value - self.minimum) / span

    def set_from_fraction(self, f: float) -> None:
        f = max(0.0, min(1.0, f))
        self.set_value(self.minimum + f * (self.maximum - self.minimum))

    @property
    def track_x(self) -> int:
        return self.x + len(self.label) + 2

    def text(self) -> str:
        filled = int(round(self.fraction() * SLIDER_TRACK))
        track = "=" * filled + "-" * (SLIDER_TRACK - filled)
        digits = max(0, -int(math.floor(math.log10(self.step)))) if self.step > 0 else 2
        return f"{self.label} [{track}] {self._value:.{digits}f}"

    def hit(self, col: int) -> bool:
        return self.x <= col < self.x + len(self.text())

    def click_at(self, col: int) -> None:
        if self.track_x <= col < self.track_x + SLIDER_TRACK:
            self.set_from_fraction((col - self.track_x) / (SLIDER_TRACK - 1))


class Button:
    """Labelled button with click handlers."""

    def __init__(self, label: str) -> None:
        self.label = label
        self.x: int = 0
        self._handlers: list[Callable[[], None]] = []

    def on_click(self, handler: Callable[[], None]) -> None:
        self._handlers.append(handler)

    def set_label(self, text: str) -> None:
        self.label = text

    def click(self) -> None:
        for handler in self._handlers:
            handler()

    def text(self) -> str:
        return f"[{self.label}]"

    def hit(self, col: int) -> bool:
        return self.x <= col < self.x + len(self.text())

    def click_at(self, col: int) -> None:
        self.click()


Widget = Slider | Button


# ═══════════════════════════════════════════════════════════════════════
#  Background track transport
# ═══════════════════════════════════════════════════════════════════════

class TransportState(IntEnum):
    STOPPED = 0
    PLAYING = 1
    FADING_OUT = 2
    PAUSED = 3


class MusicTransport:
    """
    Play/pause lifecycle of the looping background track.

    Pausing fades out first; the frame tick completes the pause once the
    fade has run. Playing again mid-fade simply takes over, so no stale
    pause can land on a track that is playing.
    """

    def __init__(self, clip: Clip | None, fade_secs: float = FADE_SECS) -> None:
        self.clip = clip
        self.fade_secs = fade_secs
        self.state: TransportState = TransportState.STOPPED
        self._pause_at_ms: float = 0.0

    def play(self, now_ms: float) -> None:
        if self.clip is not None:
            self.clip.set_volume(0.0)
            self.clip.loop()
            self.clip.fade(1.0, self.fade_secs)
        self.state = TransportState.PLAYING

    def pause(self, now_ms: float) -> None:
        if self.clip is not None:
            self.clip.fade(0.0, self.fade_secs)
        self.state = TransportState.FADING_OUT
        self._pause_at_ms = now_ms + self.fade_secs * 1000.0

    def tick(self, now_ms: float) -> bool:
        """Advance the state machine. Returns True when a pause completes."""
        if self.state == TransportState.FADING_OUT and now_ms >= self._pause_at_ms:
            if self.clip is not None:
                self.clip.pause()
            self.state = TransportState.PAUSED
            return True
        return False


# ═══════════════════════════════════════════════════════════════════════
#  Event logger
# ═══════════════════════════════════════════════════════════════════════

class EventLogger:
    """Writes sketch telemetry to CSV for post-hoc tuning."""

    HEADER: ClassVar[str] = (
        "frame,time_s,t,playing,filled,glitch_cells,flashing,level,event\n"
    )

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            self._fh = None

    def log(
        self,
        frame: int,
        t: float,
        playing: bool,
        filled: int,
        glitch_cells: int,
        flashing: int,
        level: float,
        event: str = "",
    ) -> None:
        if self._fh is None:
            return
        elapsed = time.monotonic() - self._t0
        self._fh.write(
            f"{frame},{elapsed:.2f},{t:.4f},{int(playing)},{filled},"
            f"{glitch_cells},{flashing},{level:.4f},{event}\n"
        )
        # Flush on events and on every heartbeat row
        if event or frame % LOG_EVERY == 0:
            try:
                self._fh.flush()
            except OSError:
                pass

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  The sketch
# ═══════════════════════════════════════════════════════════════════════

class GlitchGrid:
    """
    Owns every piece of animation state and drives it one frame at a time.

    The host loop calls run_timers() then frame() once per tick, and
    forwards clicks (canvas pixels) to click(). Audio is optional: with no
    engine the sketch is silent and never sees a beat.
    """

    def __init__(
        self,
        width: int,
        height: int,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        *,
        music: GlitchMusicEngine | None = None,
        background_clip: Clip | None = None,
        samples: list[Clip] | None = None,
        seed: int | None = None,
        clock: Callable[[], float] = monotonic_ms,
        logger: EventLogger | None = None,
    ) -> None:
        self.clock = clock
        self.rng: np.random.Generator = np.random.default_rng(seed)
        self.noise = PerlinNoise(seed)
        self.contrast: float = CONTRAST

        self.canvas = Canvas(width, height)
        self.grid = GridState(cols, rows)
        self.partition = Partition(cols, rows, width, height)
        self.timers = TimerQueue(clock)
        self.session = GlitchSession()
        self.overlay = OverlayWindow()
        self.spreader = GlitchSpreader(self.grid, self.session, self.timers)
        self.beat = BeatDetector()

        self.music = music
        self.background_clip = background_clip
        self.samples: list[Clip] = list(samples or [])
        self.transport = MusicTransport(background_clip)
        self._echo_handle: TimerHandle | None = None

        self.t: float = 0.0
        self.playing: bool = False
        self.frame_count: int = 0
        self.level: float = 0.0
        self.looks: NDArray[np.int8] = np.zeros((cols, rows), dtype=np.int8)
        self.logger = logger
        self.last_event: str = ""

        self.speed_slider = Slider("speed", *SPEED_RANGE)
        self.strength_slider = Slider("strength", *STRENGTH_RANGE)
        self.play_button = Button("Play")
        self.play_button.on_click(self.toggle_play)
        self.clear_button = Button("Clear")
        self.clear_button.on_click(self.clear)
        self.widgets: list[Widget] = [
            self.play_button, self.clear_button, self.speed_slider, self.strength_slider,
        ]

    # ── Controls ────────────────────────────────────────────────────

    def toggle_play(self) -> None:
        now = self.clock()
        self.playing = not self.playing
        if self.playing:
            self.transport.play(now)
            self.play_button.set_label("Pause")
            self._log("play")
        else:
            self.transport.pause(now)
            self.play_button.set_label("Play")
            self._log("pause")

    def clear(self) -> None:
        self.grid.clear()
        self._log("clear")

    def resize(self, width: int, height: int) -> None:
        """Swap in a canvas of the new size. Grid, timers and the live glitch carry on."""
        self.canvas = Canvas(width, height)
        self.partition = Partition(self.grid.cols, self.grid.rows, width, height)

    def click(self, x: float, y: float) -> Cell | None:
        """Handle a pointer click at canvas coordinates."""
        cell = self.partition.locate(x, y)
        if cell is None:
            return None
        if self.playing:
            self._trigger_glitch(cell)
        else:
            self.grid.toggle(*cell)
            self._log("toggle")
        return cell

    def _trigger_glitch(self, cell: Cell) -> None:
        now = self.clock()
        self.session.begin(now)
        self.overlay.begin(now)
        self.spreader.spread(cell, SPREAD_DEPTH)
        self._play_glitch_sound()
        self._log("glitch")

    def _play_glitch_sound(self) -> None:
        if self.samples:
            sample = self.samples[int(self.rng.integers(len(self.samples)))]
            if sample.is_loaded():
                sample.play()

        if self.music is None or self.background_clip is None:
            return
        music, clip = self.music, self.background_clip
        music.apply_echo(clip, ECHO_MIX, ECHO_FEEDBACK, ECHO_DELAY_MS)
        if self._echo_handle is not None:
            self._echo_handle.cancel()
        self._echo_handle = self.timers.schedule(ECHO_HOLD_MS, lambda: music.remove_echo(clip))

    # ── Frame ───────────────────────────────────────────────────────

    def run_timers(self) -> int:
        """Run deferred callbacks (glitch wave steps, echo teardown) that are due."""
        return self.timers.run_due()

    def frame(self) -> None:
        now = self.clock()

        if self.session.expire(now):
            self._log("glitch_end")
        self.overlay.expire(now)

        if self.playing:
            self.t += self.speed_slider.value()
        if self.transport.tick(now):
            self._log("paused")

        self.partition.recompute(self.noise, self.t, self.strength_slider.value(),
                                 self.contrast)

        self.render_cells()

        if self.overlay.showing(now):
            self.split_channels()

        self.level = self._sample_level()
        intensity = self.beat.on_level(self.level)
        if intensity > 0:
            self.flash_random(intensity)
            self._log(f"beat:{intensity}")

        self.frame_count += 1

    def glitch_mask(self) -> NDArray[np.bool_]:
        mask = np.zeros((self.grid.cols, self.grid.rows), dtype=np.bool_)
        if self.session.active:
            for i, j in self.session.cells:
                mask[i, j] = True
        return mask

    def render_cells(self) -> None:
        canvas = self.canvas
        grid = self.grid
        canvas.background(WHITE)

        self.looks = resolve_looks(grid.flash, self.glitch_mask(), self.session.active)
        looks = self.looks.tolist()
        filled = grid.filled.tolist()

        xs = self.partition.col_offsets().tolist()
        ys = self.partition.row_offsets().tolist()
        ws = self.partition.col_widths.tolist()
        hs = self.partition.row_heights.tolist()

        pulse = PULSE_BASE + PULSE_DEPTH * math.sin(self.frame_count * PULSE_RATE)
        jitter = max(1.0, GLITCH_JITTER_FRAC * canvas.width)

        for j in range(grid.rows):
            for i in range(grid.cols):
                x, y, w, h = xs[i], ys[j], ws[i], hs[j]
                look = looks[i][j]
                if look == CellLook.FLASH:
                    canvas.draw_filled_rect(x, y, w * pulse, h * pulse,
                                            WHITE if filled[i][j] else RED)
                elif look == CellLook.GLITCH:
                    dx, dy = self.rng.uniform(-jitter, jitter, 2)
                    color = GLITCH_COLORS[int(self.rng.integers(len(GLITCH_COLORS)))]
                    canvas.draw_filled_rect(x + dx, y + dy, w, h, color)
                elif look == CellLook.INVERTED:
                    canvas.draw_filled_rect(x, y, w, h, WHITE if filled[i][j] else BLACK)
                elif filled[i][j]:
                    canvas.draw_filled_rect(x, y, w, h, BLACK)
                else:
                    canvas.draw_unfilled_rect(x, y, w, h)

        grid.tick_flash()

    def split_channels(self) -> None:
        """Redraw the frame as three channel images, each nudged at random."""
        canvas = self.canvas
        snap = canvas.capture_snapshot()
        j = max(1.0, SPLIT_JITTER_FRAC * canvas.width)
        rng = self.rng
        offsets = [
            (rng.uniform(-j, j), 0.0),
            (0.0, rng.uniform(-j, j)),
            (rng.uniform(0.0, j), rng.uniform(0.0, j)),
        ]
        canvas.background(BLACK)
        for channel, (dx, dy) in enumerate(offsets):
            canvas.draw_image(canvas.make_image_from_channel(snap, channel), dx, dy,
                              blend=BLEND_ADD)

    def _sample_level(self) -> float:
        if self.music is None or self.background_clip is None:
            return 0.0
        return self.music.level(self.background_clip)

    def flash_random(self, count: int, frames: int = FLASH_FRAMES) -> None:
        for _ in range(count):
            i = int(self.rng.integers(self.grid.cols))
            j = int(self.rng.integers(self.grid.rows))
            self.grid.set_flash(i, j, frames)

    # ── Telemetry ───────────────────────────────────────────────────

    def _log(self, event: str) -> None:
        self.last_event = event
        self.log_state(event)

    def log_state(self, event: str = "") -> None:
        if self.logger is None:
            return
        self.logger.log(
            frame=self.frame_count,
            t=self.t,
            playing=self.playing,
            filled=self.grid.filled_count(),
            glitch_cells=len(self.session.cells),
            flashing=self.grid.flashing_count(),
            level=self.level,
            event=event,
        )


# ═══════════════════════════════════════════════════════════════════════
#  Terminal output
# ═══════════════════════════════════════════════════════════════════════

def quantize(pixels: NDArray[np.uint8]) -> NDArray[np.intp]:
    """Nearest palette index for every pixel."""
    diff = pixels[:, :, None, :].astype(np.int32) - PALETTE_RGB[None, None, :, :]
    return np.argmin(np.einsum("hwpc,hwpc->hwp", diff, diff), axis=2)


def halfblock_pairs(
    idx: NDArray[np.intp], draw_rows: int, draw_cols: int
) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
    """Split palette indices into (top, bottom) pixel rows per terminal row."""
    row_end = draw_rows * 2
    return idx[0:row_end:2, :draw_cols], idx[1:row_end:2, :draw_cols]


@dataclass
class ColorMap:
    """Manages curses colour pairs: one per (top, bottom) palette combination."""

    n_colors: int = len(PALETTE_XTERM)
    pair_table: NDArray[np.int32] = field(
        default_factory=lambda: np.zeros((len(PALETTE_XTERM), len(PALETTE_XTERM)), dtype=np.int32)
    )

    def setup(self) -> None:
        curses.start_color()
        curses.use_default_colors()

        colors = PALETTE_XTERM if curses.COLORS >= 256 else PALETTE_BASIC
        max_pairs = curses.COLOR_PAIRS - 1
        pair_id = 1
        for top in range(self.n_colors):
            for bot in range(self.n_colors):
                if pair_id > max_pairs:
                    break
                curses.init_pair(pair_id, colors[top], colors[bot])
                self.pair_table[top, bot] = pair_id
                pair_id += 1

    def dual(self, top_idx: int, bot_idx: int) -> int:
        return int(self.pair_table[top_idx, bot_idx])


def layout_widgets(widgets: list[Widget], start: int = 2, gap: int = 2) -> int:
    """Place widgets left to right on the status bar. Returns the next free column."""
    col = start
    for w in widgets:
        w.x = col
        col += len(w.text()) + gap
    return col


def status_click(sketch: GlitchGrid, col: int) -> bool:
    for w in sketch.widgets:
        if w.hit(col):
            w.click_at(col)
            return True
    return False


def render(
    stdscr: curses.window,
    sketch: GlitchGrid,
    cmap: ColorMap,
    music_status: str = "",
) -> None:
    """Half-block rendering of the canvas plus the widget status bar."""
    max_y, max_x = stdscr.getmaxyx()
    canvas = sketch.canvas
    draw_rows = min(canvas.height // 2, max_y - 1)
    draw_cols = min(canvas.width, max_x)

    idx = quantize(canvas.pixels)
    top, bot = halfblock_pairs(idx, draw_rows, draw_cols)
    pairs = cmap.pair_table[top, bot].tolist()

    _addstr = stdscr.addstr
    _color_pair = curses.color_pair
    for y, row in enumerate(pairs):
        for x, pair in enumerate(row):
            try:
                _addstr(y, x, UPPER_HALF, _color_pair(pair))
            except curses.error:
                pass

    # ── Status bar ─────────────────────────────────────────────────
    right_start = layout_widgets(sketch.widgets)
    try:
        for w in sketch.widgets:
            attr = curses.A_BOLD if isinstance(w, Button) else curses.A_DIM
            _addstr(max_y - 1, w.x, w.text()[: max(0, max_x - 1 - w.x)], attr)
    except curses.error:
        pass

    glitch = f"glitch {len(sketch.session.cells)}" if sketch.session.active else ""
    info = f" t {sketch.t:6.2f}  {glitch}  {music_status}  q spc c +/- [/] m ,/. "
    if right_start < max_x - 1:
        try:
            _addstr(max_y - 1, right_start, info[: max_x - 1 - right_start], curses.A_DIM)
        except curses.error:
            pass


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def load_audio(
    music: GlitchMusicEngine, music_path: str | None, sample_paths: list[str]
) -> tuple[Clip, list[Clip]]:
    """Background track and glitch samples; procedural stand-ins when no paths are given."""
    if music_path:
        background = music.load_clip(music_path)
    else:
        background = music.clip_from_array(synth_beat_loop(), name="beat-loop")

    if sample_paths:
        samples = [music.load_clip(p) for p in sample_paths]
    else:
        samples = [music.clip_from_array(b, name=f"blip-{k}")
                   for k, b in enumerate(synth_glitch_blips(), start=1)]
    return background, samples


def canvas_size(stdscr: curses.window) -> tuple[int, int]:
    """Canvas pixels for the terminal: one column per cell, two rows per line above the status bar."""
    max_y, max_x = stdscr.getmaxyx()
    return max_x, max(2, (max_y - 1) * 2)


def build_sketch(
    stdscr: curses.window,
    args: argparse.Namespace,
    music: GlitchMusicEngine | None,
    background: Clip | None,
    samples: list[Clip],
    logger: EventLogger,
) -> GlitchGrid:
    width, height = canvas_size(stdscr)
    return GlitchGrid(
        width, height, args.cols, args.rows,
        music=music, background_clip=background, samples=samples,
        seed=args.seed, logger=logger,
    )


def handle_key(sketch: GlitchGrid, music: GlitchMusicEngine | None, key: int) -> bool:
    """Apply one keyboard command. Returns False when the user asked to quit."""
    if key in (ord("q"), ord("Q")):
        return False
    elif key == ord(" "):
        sketch.play_button.click()
    elif key in (ord("c"), ord("C")):
        sketch.clear_button.click()
    elif key in (ord("+"), ord("=")):
        sketch.speed_slider.nudge(1)
    elif key in (ord("-"), ord("_")):
        sketch.speed_slider.nudge(-1)
    elif key == ord("]"):
        sketch.strength_slider.nudge(5)
    elif key == ord("["):
        sketch.strength_slider.nudge(-5)
    elif key in (ord("m"), ord("M")):
        if music is not None:
            music.toggle_mute()
    elif key in (ord(","), ord("<")):
        if music is not None:
            music.adjust_volume(-0.1)
    elif key in (ord("."), ord(">")):
        if music is not None:
            music.adjust_volume(0.1)
    return True


def main(stdscr: curses.window, args: argparse.Namespace) -> None:
    curses.curs_set(0)
    stdscr.nodelay(True)
    stdscr.timeout(0)
    curses.mousemask(curses.ALL_MOUSE_EVENTS)
    curses.mouseinterval(0)

    cmap = ColorMap()
    cmap.setup()

    logger = EventLogger(Path(args.log))
    logger.open()

    # ── Audio engine ──
    music: GlitchMusicEngine | None = None
    background: Clip | None = None
    samples: list[Clip] = []
    try:
        music = GlitchMusicEngine()
        if music.start():
            background, samples = load_audio(music, args.music, args.samples)
        else:
            music = None
    except Exception:
        music = None

    sketch = build_sketch(stdscr, args, music, background, samples, logger)

    try:
        while True:
            # ── Input ──────────────────────────────────────────────
            try:
                key = stdscr.getch()
            except curses.error:
                key = -1

            if key == curses.KEY_MOUSE:
                try:
                    _, mx, my, _, bstate = curses.getmouse()
                except curses.error:
                    bstate = 0
                if bstate & (curses.BUTTON1_PRESSED | curses.BUTTON1_CLICKED):
                    max_y, _ = stdscr.getmaxyx()
                    if my == max_y - 1:
                        status_click(sketch, mx)
                    else:
                        # Centre of the terminal cell, in canvas pixels
                        sketch.click(mx + 0.5, my * 2 + 1.0)
            elif key == curses.KEY_RESIZE:
                sketch.resize(*canvas_size(stdscr))
            elif not handle_key(sketch, music, key):
                break

            # ── Simulate ───────────────────────────────────────────
            sketch.run_timers()
            sketch.frame()

            # ── Log ────────────────────────────────────────────────
            if sketch.frame_count % LOG_EVERY == 0:
                sketch.log_state()

            # ── Render ─────────────────────────────────────────────
            stdscr.erase()
            render(stdscr, sketch, cmap,
                   music_status=music.status_string() if music is not None else "[NO AUDIO]")
            stdscr.refresh()

            time.sleep(FRAME_DELAY)

    finally:
        if music is not None:
            try:
                music.stop()
            except Exception:
                pass
        logger.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Noise-warped glitch grid")
    parser.add_argument("--cols", type=int, default=DEFAULT_COLS,
                        help=f"Grid columns (default: {DEFAULT_COLS})")
    parser.add_argument("--rows", type=int, default=DEFAULT_ROWS,
                        help=f"Grid rows (default: {DEFAULT_ROWS})")
    parser.add_argument("--music", type=str, default=None,
                        help="Background track WAV (default: built-in beat loop)")
    parser.add_argument("--samples", type=str, nargs="*", default=[],
                        help="Glitch sample WAVs (default: built-in blips)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for noise and randomness")
    parser.add_argument("--log", type=str, default=str(LOG_PATH),
                        help="Event log CSV path")
    return parser.parse_args(argv)


if __name__ == "__main__":
    try:
        curses.wrapper(main, parse_args())
    except KeyboardInterrupt:
        pass
