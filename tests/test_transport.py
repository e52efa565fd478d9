import numpy as np
import pytest

from glitch import FADE_SECS, MusicTransport, TransportState
from glitch_music import BUFFER_SIZE, SAMPLE_RATE, GlitchMusicEngine


def _clip():
    music = GlitchMusicEngine()
    clip = music.clip_from_array(np.full(SAMPLE_RATE * 2, 0.5, dtype=np.float32), name="bg")
    return music, clip


def test_play_starts_loop_from_silence_and_fades_in():
    music, clip = _clip()
    transport = MusicTransport(clip)
    transport.play(0.0)
    assert transport.state == TransportState.PLAYING
    assert clip.is_playing
    assert clip.volume == 0.0
    for _ in range(int(FADE_SECS * SAMPLE_RATE / BUFFER_SIZE) + 2):
        music.render_buffer(BUFFER_SIZE)
    assert clip.volume == pytest.approx(1.0)


def test_pause_waits_for_fade_then_pauses():
    music, clip = _clip()
    transport = MusicTransport(clip)
    transport.play(0.0)
    transport.pause(1000.0)
    assert transport.state == TransportState.FADING_OUT
    assert not transport.tick(1000.0 + FADE_SECS * 1000 - 1)
    assert clip.is_playing
    assert transport.tick(1000.0 + FADE_SECS * 1000)
    assert transport.state == TransportState.PAUSED
    assert not clip.is_playing


def test_play_during_fade_out_cancels_pending_pause():
    music, clip = _clip()
    transport = MusicTransport(clip)
    transport.play(0.0)
    transport.pause(1000.0)
    transport.play(1100.0)
    assert not transport.tick(5000.0)
    assert transport.state == TransportState.PLAYING
    assert clip.is_playing


def test_transport_without_clip_still_tracks_state():
    transport = MusicTransport(None)
    transport.play(0.0)
    transport.pause(0.0)
    assert transport.tick(FADE_SECS * 1000)
    assert transport.state == TransportState.PAUSED
