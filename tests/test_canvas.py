import numpy as np

from glitch import (
    BLACK,
    BLEND_ADD,
    RED,
    STROKE,
    WHITE,
    Canvas,
    CellLook,
    resolve_looks,
)


def test_filled_rect_has_stroke_border():
    canvas = Canvas(20, 10)
    canvas.background(WHITE)
    canvas.draw_filled_rect(2, 2, 6, 5, RED)
    px = canvas.pixels
    assert tuple(px[4, 4]) == RED
    assert tuple(px[2, 4]) == STROKE   # top edge
    assert tuple(px[6, 4]) == STROKE   # bottom edge
    assert tuple(px[4, 2]) == STROKE   # left edge
    assert tuple(px[4, 7]) == STROKE   # right edge
    assert tuple(px[4, 8]) == WHITE    # outside


def test_unfilled_rect_leaves_interior():
    canvas = Canvas(20, 10)
    canvas.background(WHITE)
    canvas.draw_unfilled_rect(0, 0, 10, 10)
    assert tuple(canvas.pixels[5, 5]) == WHITE
    assert tuple(canvas.pixels[0, 5]) == STROKE


def test_rect_clipped_to_canvas():
    canvas = Canvas(10, 10)
    canvas.background(WHITE)
    canvas.draw_filled_rect(8, 8, 10, 10, BLACK)
    canvas.draw_filled_rect(-5, -5, 3, 3, BLACK)
    assert tuple(canvas.pixels[9, 9]) == BLACK
    assert tuple(canvas.pixels[0, 0]) == WHITE


def test_snapshot_is_a_copy():
    canvas = Canvas(4, 4)
    canvas.background(WHITE)
    snap = canvas.capture_snapshot()
    canvas.background(BLACK)
    assert tuple(snap[0, 0]) == WHITE


def test_channel_image_keeps_one_channel():
    snap = np.full((2, 2, 3), 200, dtype=np.uint8)
    img = Canvas.make_image_from_channel(snap, 1)
    assert img[..., 1].min() == 200
    assert img[..., 0].max() == 0 and img[..., 2].max() == 0


def test_additive_channel_images_recombine():
    canvas = Canvas(6, 6)
    canvas.background((10, 20, 30))
    snap = canvas.capture_snapshot()
    canvas.background(BLACK)
    for ch in range(3):
        canvas.draw_image(Canvas.make_image_from_channel(snap, ch), 0, 0, blend=BLEND_ADD)
    assert np.array_equal(canvas.pixels, snap)


def test_draw_image_offset_is_clipped():
    canvas = Canvas(4, 4)
    canvas.background(BLACK)
    img = np.full((4, 4, 3), 255, dtype=np.uint8)
    canvas.draw_image(img, 2, 1)
    assert canvas.pixels[:1].max() == 0
    assert canvas.pixels[:, :2].max() == 0
    assert canvas.pixels[1:, 2:].min() == 255


def test_look_priority_table():
    flash = np.array([[2, 0, 0, 0]], dtype=np.int32)
    glitch = np.array([[True, True, False, False]])
    looks = resolve_looks(flash, glitch, session_active=True)
    assert looks.tolist() == [[CellLook.FLASH, CellLook.GLITCH, CellLook.INVERTED, CellLook.INVERTED]]
    looks = resolve_looks(flash, np.zeros_like(glitch), session_active=False)
    assert looks.tolist() == [[CellLook.FLASH, CellLook.NORMAL, CellLook.NORMAL, CellLook.NORMAL]]
