"""
Audio engine for the glitch grid sketch.

Plays a looping background track, one-shot glitch samples and a feedback
echo, and meters the loudness of each clip so the sketch can react to
beats in the music.

Architecture:
  The main thread calls play/loop/fade/pause on Clip objects and reads
  their level. Each call only swaps a few attributes (GIL guarantees).
  The PyAudio callback renders every active clip, runs the echo lines,
  stores a fresh RMS level per clip and mixes to the output buffer.

Audio: 44100 Hz, mono, float32, 2048 frames/buffer (~46ms latency).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import NDArray
from scipy.io import wavfile
from scipy.signal import lfilter, resample_poly

try:
    import pyaudio
    _HAS_PYAUDIO = True
except ImportError:
    pyaudio = None  # type: ignore[assignment]
    _HAS_PYAUDIO = False


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

SAMPLE_RATE: int = 44100
BUFFER_SIZE: int = 2048
TWO_PI: float = 2.0 * math.pi

# Wet signal of the echo is darkened by a one-pole low-pass
ECHO_TONE_HZ: float = 1200.0
# An echo line that is no longer fed is dropped once its tail is this quiet
ECHO_SILENCE: float = 1e-4

# Procedural fallback material (used when no WAV assets are given)
LOOP_BPM: float = 116.0
LOOP_BARS: int = 2


# ═══════════════════════════════════════════════════════════════════════
#  Utility functions
# ═══════════════════════════════════════════════════════════════════════

def soft_clip(x: NDArray[np.float32]) -> NDArray[np.float32]:
    """Soft clipping (tanh-based) to prevent harsh digital distortion.

    Operates in-place to avoid allocations on the audio callback thread.
    """
    np.tanh(x, out=x)
    return x


def rms(x: NDArray[np.float32]) -> float:
    """Root-mean-square level of a buffer (0.0 for an empty one)."""
    if len(x) == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(x, dtype=np.float64))))


def to_mono_float(data: NDArray, rate: int) -> NDArray[np.float32]:
    """Convert raw WAV samples of any integer/float type to mono float32 at SAMPLE_RATE."""
    if data.dtype == np.uint8:
        audio = (data.astype(np.float32) - 128.0) / 128.0
    elif np.issubdtype(data.dtype, np.integer):
        audio = data.astype(np.float32) / float(np.iinfo(data.dtype).max)
    else:
        audio = data.astype(np.float32)

    if audio.ndim > 1:
        audio = audio.mean(axis=1)

    if rate != SAMPLE_RATE and rate > 0:
        g = math.gcd(rate, SAMPLE_RATE)
        audio = resample_poly(audio, SAMPLE_RATE // g, rate // g).astype(np.float32)

    return np.ascontiguousarray(audio, dtype=np.float32)


class CachedLPF:
    """One-pole low-pass filter with cached coefficients and persistent state.

    Carries filter state (zi) across audio buffers so the echo tail stays
    continuous between callbacks.
    """

    def __init__(self, cutoff_hz: float, sample_rate: int = SAMPLE_RATE) -> None:
        rc = 1.0 / (TWO_PI * cutoff_hz)
        dt = 1.0 / sample_rate
        alpha = dt / (rc + dt)
        self._b = np.array([alpha], dtype=np.float64)
        self._a = np.array([1.0, -(1.0 - alpha)], dtype=np.float64)
        self._zi = np.zeros(1, dtype=np.float64)

    def apply(self, signal: NDArray[np.float32]) -> NDArray[np.float32]:
        out, self._zi = lfilter(self._b, self._a,
                                signal.astype(np.float64), zi=self._zi)
        return out.astype(np.float32)


# ═══════════════════════════════════════════════════════════════════════
#  Oscillator primitives (vectorized numpy)
# ═══════════════════════════════════════════════════════════════════════

def _sine_wave(phase: NDArray[np.float64]) -> NDArray[np.float32]:
    """Pure sine wave from phase array (in radians)."""
    return np.sin(phase).astype(np.float32)


def _square_wave(phase: NDArray[np.float64], duty: float = 0.5) -> NDArray[np.float32]:
    """Naive square wave; fine for short, deliberately harsh glitch blips."""
    p = np.mod(phase, TWO_PI) / TWO_PI
    return np.where(p < duty, 1.0, -1.0).astype(np.float32)


def _decay_env(n_samples: int, tau: float) -> NDArray[np.float32]:
    """Exponential decay envelope with time constant tau (seconds)."""
    t = np.arange(n_samples, dtype=np.float64) / SAMPLE_RATE
    return np.exp(-t / max(1e-4, tau)).astype(np.float32)


def synth_kick(duration: float = 0.35) -> NDArray[np.float32]:
    """Pitch-swept sine kick (150 Hz → 45 Hz)."""
    n = int(duration * SAMPLE_RATE)
    t = np.arange(n, dtype=np.float64) / SAMPLE_RATE
    freq = 45.0 + 105.0 * np.exp(-t / 0.04)
    phase = TWO_PI * np.cumsum(freq) / SAMPLE_RATE
    return _sine_wave(phase) * _decay_env(n, 0.09)


def synth_hat(duration: float = 0.05, rng: np.random.Generator | None = None) -> NDArray[np.float32]:
    """High-passed noise tick."""
    rng = rng if rng is not None else np.random.default_rng(7)
    n = int(duration * SAMPLE_RATE)
    noise = rng.standard_normal(n).astype(np.float32)
    # First difference is a cheap high-pass
    noise = np.diff(noise, prepend=np.float32(0.0)) * 0.5
    return noise * _decay_env(n, 0.012)


def synth_beat_loop(bpm: float = LOOP_BPM, bars: int = LOOP_BARS) -> NDArray[np.float32]:
    """Four-on-the-floor loop with offbeat hats over a low drone.

    Kicks are loud and sparse so the RMS meter sees clear spikes.
    """
    beat_len = int(60.0 / bpm * SAMPLE_RATE)
    n_beats = 4 * bars
    total = beat_len * n_beats
    out = np.zeros(total, dtype=np.float32)

    t = np.arange(total, dtype=np.float64) / SAMPLE_RATE
    out += 0.04 * _sine_wave(TWO_PI * 55.0 * t)
    out += 0.02 * _sine_wave(TWO_PI * 82.5 * t)

    kick = synth_kick()
    hat = synth_hat()
    for b in range(n_beats):
        start = b * beat_len
        end = min(total, start + len(kick))
        out[start:end] += 0.9 * kick[: end - start]
        off = start + beat_len // 2
        end = min(total, off + len(hat))
        out[off:end] += 0.25 * hat[: end - off]

    return soft_clip(out)


def synth_glitch_blips() -> list[NDArray[np.float32]]:
    """Three short glitch one-shots: a falling square chirp, a bitcrushed
    noise burst and an FM zap."""
    rng = np.random.default_rng(11)

    n = int(0.18 * SAMPLE_RATE)
    t = np.arange(n, dtype=np.float64) / SAMPLE_RATE
    chirp_freq = 1800.0 * np.exp(-t / 0.05) + 120.0
    chirp = _square_wave(TWO_PI * np.cumsum(chirp_freq) / SAMPLE_RATE, duty=0.3)
    chirp *= _decay_env(n, 0.06) * 0.35

    n = int(0.12 * SAMPLE_RATE)
    noise = rng.uniform(-1.0, 1.0, n).astype(np.float32)
    crushed = np.repeat(noise[::12], 12)[:n]
    crushed = np.round(crushed * 4.0) / 4.0
    crushed *= _decay_env(n, 0.04) * 0.4

    n = int(0.25 * SAMPLE_RATE)
    t = np.arange(n, dtype=np.float64) / SAMPLE_RATE
    mod = 6.0 * np.sin(TWO_PI * 97.0 * t) * np.exp(-t / 0.08)
    zap = _sine_wave(TWO_PI * 660.0 * t + mod) * _decay_env(n, 0.1) * 0.4

    return [chirp.astype(np.float32), crushed.astype(np.float32), zap.astype(np.float32)]


# ═══════════════════════════════════════════════════════════════════════
#  Clip: one playable sound
# ═══════════════════════════════════════════════════════════════════════

class Clip:
    """A sound held in memory with a play head, volume and fade ramp.

    An unloaded clip (data is None) accepts every call and stays silent.
    """

    def __init__(self, data: NDArray[np.float32] | None, name: str = "") -> None:
        self.name: str = name
        self._data: NDArray[np.float32] | None = data
        self._pos: int = 0
        self._playing: bool = False
        self._looping: bool = False
        self._volume: float = 1.0
        self._fade_target: float = 1.0
        self._fade_step: float = 0.0
        self._fade_remaining: int = 0
        self.level: float = 0.0

    def is_loaded(self) -> bool:
        return self._data is not None and len(self._data) > 0

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def volume(self) -> float:
        return self._volume

    def play(self) -> None:
        """Play once from the start."""
        if not self.is_loaded():
            return
        self._pos = 0
        self._looping = False
        self._playing = True

    def loop(self) -> None:
        """Play looping, resuming from the current play head."""
        if not self.is_loaded():
            return
        self._looping = True
        self._playing = True

    def pause(self) -> None:
        self._playing = False

    def set_volume(self, volume: float) -> None:
        self._fade_remaining = 0
        self._volume = max(0.0, volume)

    def fade(self, target: float, seconds: float) -> None:
        """Ramp volume linearly to target over the given time."""
        n = int(max(0.0, seconds) * SAMPLE_RATE)
        if n == 0:
            self.set_volume(target)
            return
        self._fade_target = max(0.0, target)
        self._fade_step = (self._fade_target - self._volume) / n
        self._fade_remaining = n

    def render(self, n_samples: int) -> NDArray[np.float32]:
        """Render n_samples of this clip and update its level."""
        out = np.zeros(n_samples, dtype=np.float32)
        if not self._playing or self._data is None:
            self.level = 0.0
            return out

        data = self._data
        length = len(data)
        filled = 0
        while filled < n_samples:
            take = min(n_samples - filled, length - self._pos)
            out[filled:filled + take] = data[self._pos:self._pos + take]
            filled += take
            self._pos += take
            if self._pos >= length:
                self._pos = 0
                if not self._looping:
                    self._playing = False
                    break

        out *= self._gain_ramp(n_samples)
        self.level = min(1.0, rms(out))
        return out

    def _gain_ramp(self, n_samples: int) -> NDArray[np.float32]:
        """Per-sample gain for this buffer, advancing any active fade."""
        if self._fade_remaining <= 0:
            return np.full(n_samples, self._volume, dtype=np.float32)
        steps = min(n_samples, self._fade_remaining)
        ramp = np.full(n_samples, self._fade_target, dtype=np.float32)
        ramp[:steps] = self._volume + self._fade_step * np.arange(1, steps + 1)
        self._fade_remaining -= steps
        self._volume = self._fade_target if self._fade_remaining == 0 else float(ramp[steps - 1])
        return ramp


# ═══════════════════════════════════════════════════════════════════════
#  Echo: feedback delay line attached to one clip
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class EchoSettings:
    mix: float = 0.25
    feedback: float = 0.6
    delay_ms: float = 800.0


class EchoLine:
    """Feedback delay: d[n] = x[n-D] + feedback * d[n-D].

    Once detached the line stops taking input and its tail rings out.
    """

    def __init__(self, settings: EchoSettings) -> None:
        self.settings = settings
        self.delay_samples: int = max(1, int(settings.delay_ms * SAMPLE_RATE / 1000.0))
        self._line: NDArray[np.float32] = np.zeros(self.delay_samples, dtype=np.float32)
        self._idx: int = 0
        self._tone: CachedLPF = CachedLPF(ECHO_TONE_HZ)
        self.feeding: bool = True

    def process(self, dry: NDArray[np.float32]) -> NDArray[np.float32]:
        """Return the wet signal for this buffer (mix already applied)."""
        n = len(dry)
        x = dry if self.feeding else np.zeros(n, dtype=np.float32)
        wet = np.empty(n, dtype=np.float32)
        d = self.delay_samples
        fb = np.float32(self.settings.feedback)

        done = 0
        while done < n:
            # A chunk never crosses the ring end nor exceeds one delay period
            take = min(n - done, d - self._idx)
            seg = slice(self._idx, self._idx + take)
            delayed = self._line[seg].copy()
            wet[done:done + take] = delayed
            self._line[seg] = x[done:done + take] + fb * delayed
            self._idx = (self._idx + take) % d
            done += take

        return self._tone.apply(wet) * np.float32(self.settings.mix)

    @property
    def finished(self) -> bool:
        return not self.feeding and float(np.max(np.abs(self._line))) < ECHO_SILENCE


# ═══════════════════════════════════════════════════════════════════════
#  The audio engine
# ═══════════════════════════════════════════════════════════════════════

class GlitchMusicEngine:
    """
    Clip mixer with per-clip echo and level metering.

    Call start() to begin audio output, load clips, drive them from the
    main thread and stop() on shutdown. render_buffer() is usable without
    a device (tests, bench).
    """

    def __init__(self) -> None:
        self._muted: bool = False
        self._master_volume: float = 0.8

        self._clips: list[Clip] = []
        self._echoes: dict[int, EchoLine] = {}

        self._pa: pyaudio.PyAudio | None = None  # type: ignore[name-defined]
        self._stream: pyaudio.Stream | None = None  # type: ignore[name-defined]
        self._running: bool = False

        self._underrun_count: int = 0

    # ── Public properties ──────────────────────────────────────────────

    @property
    def volume_percent(self) -> int:
        return round(self._master_volume * 100)

    # ── Controls ───────────────────────────────────────────────────────

    def toggle_mute(self) -> None:
        self._muted = not self._muted

    def adjust_volume(self, delta: float) -> None:
        self._master_volume = max(0.0, min(1.0, self._master_volume + delta))

    # ── Clips ──────────────────────────────────────────────────────────

    def load_clip(self, path: str | Path) -> Clip:
        """Load a WAV file. Unreadable files give an unloaded (silent) clip."""
        path = Path(path)
        try:
            rate, data = wavfile.read(path)
            clip = Clip(to_mono_float(data, rate), name=path.name)
        except (OSError, ValueError):
            clip = Clip(None, name=path.name)
        self._clips.append(clip)
        return clip

    def clip_from_array(self, data: NDArray[np.float32], name: str = "") -> Clip:
        clip = Clip(np.ascontiguousarray(data, dtype=np.float32), name=name)
        self._clips.append(clip)
        return clip

    def apply_echo(self, clip: Clip, mix: float, feedback: float, delay_ms: float) -> None:
        """Route clip through a fresh feedback echo, replacing any existing one."""
        if not clip.is_loaded():
            return
        settings = EchoSettings(mix=mix, feedback=max(0.0, min(0.95, feedback)),
                                delay_ms=delay_ms)
        self._echoes[id(clip)] = EchoLine(settings)

    def remove_echo(self, clip: Clip) -> None:
        """Stop feeding the clip's echo; the tail decays on its own."""
        echo = self._echoes.get(id(clip))
        if echo is not None:
            echo.feeding = False

    def has_echo(self, clip: Clip) -> bool:
        echo = self._echoes.get(id(clip))
        return echo is not None and echo.feeding

    def level(self, clip: Clip) -> float:
        """Loudness of the clip's latest buffer, in [0, 1]."""
        return clip.level

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> bool:
        """Start audio output. Returns True on success, False on failure."""
        if not _HAS_PYAUDIO:
            return False

        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=SAMPLE_RATE,
                output=True,
                frames_per_buffer=BUFFER_SIZE,
                stream_callback=self._audio_callback,
            )
            self._stream.start_stream()
            self._running = True
            return True
        except Exception:
            self._cleanup_audio()
            return False

    def stop(self) -> None:
        """Stop audio output and clean up resources."""
        self._running = False
        self._cleanup_audio()

    def _cleanup_audio(self) -> None:
        """Safely tear down PyAudio resources."""
        try:
            if self._stream is not None:
                if self._stream.is_active():
                    self._stream.stop_stream()
                self._stream.close()
        except Exception:
            pass
        self._stream = None
        try:
            if self._pa is not None:
                self._pa.terminate()
        except Exception:
            pass
        self._pa = None

    # ── Audio callback (runs on PyAudio thread) ────────────────────────

    def _audio_callback(
        self,
        in_data: bytes | None,
        frame_count: int,
        time_info: dict[str, float],
        status_flags: int,
    ) -> tuple[bytes, int]:
        """PyAudio stream callback. Mixes all clips."""
        if not self._running:
            silence = b'\x00' * (frame_count * 4)
            return (silence, pyaudio.paComplete)

        if status_flags & pyaudio.paOutputUnderflow:
            self._underrun_count += 1

        try:
            samples = self.render_buffer(frame_count)
        except Exception:
            samples = np.zeros(frame_count, dtype=np.float32)

        return (samples.tobytes(), pyaudio.paContinue)

    def render_buffer(self, n_samples: int) -> NDArray[np.float32]:
        """Mix every clip (plus echo tails) into one output buffer."""
        mix = np.zeros(n_samples, dtype=np.float32)
        for clip in list(self._clips):
            dry = clip.render(n_samples)
            mix += dry
            echo = self._echoes.get(id(clip))
            if echo is not None:
                mix += echo.process(dry)
                if echo.finished:
                    self._echoes.pop(id(clip), None)

        if self._muted:
            mix[:] = 0.0
        else:
            mix *= self._master_volume

        return soft_clip(mix)

    # ── Status string for display ──────────────────────────────────────

    def status_string(self) -> str:
        """Return a short status string for the status bar."""
        if not self._running:
            return "[NO AUDIO]"
        if self._muted:
            return "[MUTE]"
        base = f"VOL {self.volume_percent}%"
        if self._echoes:
            base += " ECHO"
        if self._underrun_count > 0:
            base += f" XR:{self._underrun_count}"
        return base
