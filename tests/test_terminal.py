import numpy as np
import pytest

from glitch import (
    BLACK,
    BLUE,
    PALETTE_RGB,
    RED,
    STROKE,
    WHITE,
    ColorMap,
    GlitchGrid,
    halfblock_pairs,
    handle_key,
    parse_args,
    quantize,
)
from glitch_music import GlitchMusicEngine


def test_quantize_exact_palette_colours():
    px = np.array([[BLACK, WHITE, RED, BLUE, STROKE]], dtype=np.uint8)
    idx = quantize(px)
    assert [tuple(PALETTE_RGB[k]) for k in idx[0]] == [BLACK, WHITE, RED, BLUE, STROKE]


def test_quantize_split_channel_leftovers():
    # Stroke grey seen through only the red channel lands on red
    px = np.array([[(180, 0, 0), (0, 0, 180)]], dtype=np.uint8)
    idx = quantize(px)
    assert tuple(PALETTE_RGB[idx[0, 0]]) == RED
    assert tuple(PALETTE_RGB[idx[0, 1]]) == BLUE


def test_halfblock_pairs_split_even_and_odd_rows():
    idx = np.arange(12).reshape(4, 3)
    top, bot = halfblock_pairs(idx, 2, 2)
    assert top.tolist() == [[0, 1], [6, 7]]
    assert bot.tolist() == [[3, 4], [9, 10]]


def test_color_map_defaults_without_curses():
    cmap = ColorMap()
    assert cmap.pair_table.shape == (9, 9)
    assert cmap.dual(2, 3) == 0


def test_parse_args_defaults():
    args = parse_args([])
    assert (args.cols, args.rows) == (15, 10)
    assert args.music is None and args.samples == []
    args = parse_args(["--cols", "4", "--samples", "a.wav", "b.wav", "--seed", "9"])
    assert args.cols == 4 and args.samples == ["a.wav", "b.wav"] and args.seed == 9


def test_keys_drive_sketch_and_volume():
    sketch = GlitchGrid(60, 40, 3, 3, seed=1, clock=lambda: 0.0)
    music = GlitchMusicEngine()
    assert music.volume_percent == 80
    assert handle_key(sketch, music, ord("."))
    assert music.volume_percent == 90
    handle_key(sketch, music, ord(","))
    handle_key(sketch, music, ord(","))
    assert music.volume_percent == 70

    handle_key(sketch, music, ord(" "))
    assert sketch.playing
    handle_key(sketch, music, ord("]"))
    assert sketch.strength_slider.value() == pytest.approx(0.55)
    handle_key(sketch, None, ord("."))
    assert not handle_key(sketch, music, ord("q"))
