from glitch import BeatDetector


def test_spike_fires_with_mapped_intensity():
    beat = BeatDetector()
    assert beat.on_level(0.1) == 0
    assert beat.on_level(0.35) == 13


def test_small_rise_does_not_fire():
    beat = BeatDetector()
    beat.on_level(0.1)
    assert beat.on_level(0.15) == 0


def test_first_sample_compares_against_silence():
    beat = BeatDetector()
    assert beat.on_level(0.05) == 0
    beat = BeatDetector()
    assert beat.on_level(0.3) == 11


def test_intensity_is_clamped_above_ceiling():
    beat = BeatDetector()
    assert beat.intensity(0.4) == 15
    assert beat.intensity(0.9) == 15
    assert beat.intensity(1.0) == 15
    beat.on_level(0.0)
    assert beat.on_level(0.95) == 15


def test_intensity_floor_mapping():
    beat = BeatDetector()
    assert beat.intensity(0.0) == 0
    assert beat.intensity(0.2) == 7
    assert beat.intensity(-0.5) == 0


def test_last_level_updates_every_call():
    beat = BeatDetector()
    beat.on_level(0.3)
    assert beat.last_level == 0.3
    beat.on_level(0.32)
    assert beat.last_level == 0.32
    # Falling level never fires
    assert beat.on_level(0.0) == 0
    assert beat.last_level == 0.0
    # Rising from the new baseline does
    assert beat.on_level(0.25) == 9


def test_sustained_loudness_fires_once():
    beat = BeatDetector()
    fired = [beat.on_level(level) for level in (0.0, 0.35, 0.36, 0.37, 0.38)]
    assert fired == [0, 13, 0, 0, 0]
