from glitch import GridState


def test_toggle_flips_and_restores():
    grid = GridState(4, 3)
    assert not grid.is_filled(2, 1)
    grid.toggle(2, 1)
    assert grid.is_filled(2, 1)
    grid.toggle(2, 1)
    assert not grid.is_filled(2, 1)


def test_flash_countdown_stops_at_zero():
    grid = GridState(3, 3)
    grid.set_flash(1, 2, 4)
    for expected in (3, 2, 1, 0):
        grid.tick_flash()
        assert grid.flash[1, 2] == expected
    grid.tick_flash()
    assert grid.flash[1, 2] == 0, "counter must never go negative"


def test_tick_only_touches_flashing_cells():
    grid = GridState(3, 3)
    grid.set_flash(0, 0, 2)
    grid.tick_flash()
    assert grid.flash[0, 0] == 1
    assert grid.flash.sum() == 1
    assert grid.flashing_count() == 1


def test_clear_keeps_flash_counters():
    grid = GridState(3, 3)
    grid.toggle(0, 0)
    grid.toggle(2, 2)
    grid.set_flash(2, 2, 4)
    grid.clear()
    assert grid.filled_count() == 0
    assert grid.flash[2, 2] == 4


def test_in_bounds():
    grid = GridState(3, 2)
    assert grid.in_bounds(0, 0)
    assert grid.in_bounds(2, 1)
    assert not grid.in_bounds(3, 0)
    assert not grid.in_bounds(0, 2)
    assert not grid.in_bounds(-1, 0)
