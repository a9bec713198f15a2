from __future__ import annotations

import logging
import math
import random
from array import array
from collections.abc import Callable

import pygame

from .task_core import Cue, clamp01

logger = logging.getLogger(__name__)

_Wave = Callable[[float], float]


def _sine(phase: float) -> float:
    return math.sin(phase)


def _square(phase: float) -> float:
    return 1.0 if math.sin(phase) >= 0.0 else -1.0


def _saw(phase: float) -> float:
    frac = (phase / (2.0 * math.pi)) % 1.0
    return (frac * 2.0) - 1.0


class PygameCueSink:
    """Procedural cue synthesiser on top of pygame.mixer.

    Stays outside the deterministic core: it only turns cue names and the
    aggregate output into sound. When the mixer cannot start, every call is a
    no-op.
    """

    # Preferred mixer format; run() asks for it before pygame.init().
    MIXER_RATE = 22050
    MIXER_SIZE = -16
    MIXER_CHANNELS = 1
    MIXER_BUFFER = 512

    _amp = 32767
    _hum_frequencies: tuple[int, ...] = (55, 64, 73, 82, 91, 100)

    def __init__(self, *, enabled: bool = True, volume: float = 0.6) -> None:
        self._available = False
        self._enabled = bool(enabled)
        self._volume = clamp01(volume)
        self._rng = random.Random(0x6E7)
        self._sample_rate = self.MIXER_RATE
        self._channels = self.MIXER_CHANNELS

        self._sounds: dict[Cue, list[pygame.mixer.Sound]] = {}
        self._hum_sounds: dict[int, pygame.mixer.Sound] = {}
        self._hum_channel: pygame.mixer.Channel | None = None
        self._hum_frequency: int | None = None

        try:
            if pygame.mixer.get_init() is None:
                pygame.mixer.init(
                    frequency=self.MIXER_RATE,
                    size=self.MIXER_SIZE,
                    channels=self.MIXER_CHANNELS,
                    buffer=self.MIXER_BUFFER,
                )
            # pygame.init() may already have opened the device in its own format.
            rate, size, channels = pygame.mixer.get_init()
            if abs(size) != 16:
                raise RuntimeError(f"unsupported mixer sample size {size}")
            self._sample_rate = int(rate)
            self._channels = max(1, int(channels))
            pygame.mixer.set_num_channels(max(8, int(pygame.mixer.get_num_channels())))
            pygame.mixer.set_reserved(1)

            self._sounds = self._build_cue_sounds()
            self._hum_sounds = {freq: self._build_hum_sound(freq) for freq in self._hum_frequencies}
            self._hum_channel = pygame.mixer.Channel(0)

            self._available = True
        except Exception:
            logger.debug("audio unavailable, cues disabled", exc_info=True)
            self._available = False

    @property
    def available(self) -> bool:
        return self._available

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def volume(self) -> float:
        return self._volume

    def toggle(self) -> bool:
        self._enabled = not self._enabled
        if not self._enabled:
            self.stop_hum()
        return self._enabled

    def set_volume(self, volume: float) -> None:
        self._volume = clamp01(volume)

    def play(self, cue: Cue) -> None:
        if not (self._available and self._enabled):
            return
        variants = self._sounds.get(cue)
        if not variants:
            return
        sound = variants[0] if len(variants) == 1 else self._rng.choice(variants)
        try:
            sound.set_volume(self._volume)
            sound.play()
        except Exception:
            logger.debug("cue %s dropped", cue.value, exc_info=True)

    def sync_hum(self, *, output: float, alarm: bool) -> None:
        """Follow the generator output with a low drone (alarm level in cooldown)."""

        if not (self._available and self._enabled):
            return
        assert self._hum_channel is not None

        out = clamp01(output)
        target_hz = 55.0 + out * 45.0
        freq = min(self._hum_frequencies, key=lambda f: abs(f - target_hz))
        level = 0.08 if alarm else 0.02 + out * 0.04

        try:
            if freq != self._hum_frequency or not self._hum_channel.get_busy():
                self._hum_channel.play(self._hum_sounds[freq], loops=-1, fade_ms=60)
                self._hum_frequency = freq
            self._hum_channel.set_volume(clamp01(level * 5.0) * self._volume)
        except Exception:
            logger.debug("hum update failed", exc_info=True)

    def cue_length_s(self, cue: Cue) -> float:
        """Playback length of a cue as the mixer will play it (0 when silent)."""

        variants = self._sounds.get(cue)
        if not variants:
            return 0.0
        return float(variants[0].get_length())

    def hum_loop_length_s(self) -> float:
        if not self._hum_sounds:
            return 0.0
        return float(self._hum_sounds[self._hum_frequencies[0]].get_length())

    def stop_hum(self) -> None:
        self._hum_frequency = None
        if not self._available or self._hum_channel is None:
            return
        try:
            self._hum_channel.stop()
        except Exception:
            logger.debug("hum stop failed", exc_info=True)

    def stop(self) -> None:
        """Release everything that is still sounding."""

        self.stop_hum()
        if not self._available:
            return
        try:
            pygame.mixer.stop()
        except Exception:
            logger.debug("mixer stop failed", exc_info=True)

    def _build_cue_sounds(self) -> dict[Cue, list[pygame.mixer.Sound]]:
        return {
            Cue.TICK: [self._voice(lambda t: 1200.0, 0.05, gain=0.15, decay_s=0.05)],
            Cue.SLIDER: [
                self._voice(lambda t, f=f: f, 0.04, gain=0.08, decay_s=0.03)
                for f in (820.0, 900.0, 980.0)
            ],
            Cue.WHOOSH: [
                self._voice(
                    lambda t: 100.0 + 1333.3 * t if t < 0.15 else max(80.0, 300.0 - 1466.7 * (t - 0.15)),
                    0.35,
                    gain=0.06,
                    decay_s=0.3,
                    wave=_saw,
                    smooth=0.35,
                )
            ],
            Cue.HIT: [
                self._mix(
                    (
                        (0.0, self._render(lambda t: 880.0, 0.30, gain=0.20, decay_s=0.30)),
                        (0.02, self._render(lambda t: 1320.0, 0.23, gain=0.10, decay_s=0.23)),
                    )
                )
            ],
            Cue.MISS: [self._voice(lambda t: 150.0, 0.20, gain=0.10, decay_s=0.15, wave=_square)],
            Cue.SUCCESS: [
                self._mix(
                    tuple(
                        (i * 0.12, self._render(lambda t, f=f: f, 0.55, gain=0.18, decay_s=0.5, attack_s=0.03))
                        for i, f in enumerate((523.0, 659.0, 784.0, 1047.0))
                    )
                )
            ],
            Cue.PHASE: [
                self._voice(lambda t: 200.0 * (4.0 ** min(1.0, t / 0.4)), 0.55, gain=0.12, decay_s=0.5)
            ],
            Cue.ALIGN: [self._voice(lambda t: 700.0, 0.12, gain=0.10, decay_s=0.10)],
        }

    def _build_hum_sound(self, frequency_hz: int) -> pygame.mixer.Sound:
        # One second holds a whole number of cycles, so the loop is seamless.
        samples: list[float] = []
        smooth = 0.0
        for idx in range(self._sample_rate):
            phase = 2.0 * math.pi * frequency_hz * idx / self._sample_rate
            smooth = (smooth * 0.8) + (_saw(phase) * 0.2)
            samples.append(smooth * 0.6)
        return pygame.mixer.Sound(buffer=self._to_pcm(samples).tobytes())

    def _voice(
        self,
        freq_at: Callable[[float], float],
        duration_s: float,
        *,
        gain: float,
        decay_s: float,
        wave: _Wave = _sine,
        smooth: float = 0.0,
    ) -> pygame.mixer.Sound:
        samples = self._render(freq_at, duration_s, gain=gain, decay_s=decay_s, wave=wave, smooth=smooth)
        return pygame.mixer.Sound(buffer=self._to_pcm(samples).tobytes())

    def _render(
        self,
        freq_at: Callable[[float], float],
        duration_s: float,
        *,
        gain: float,
        decay_s: float,
        wave: _Wave = _sine,
        smooth: float = 0.0,
        attack_s: float = 0.004,
    ) -> list[float]:
        sample_count = max(1, int(self._sample_rate * duration_s))
        attack_n = max(1, int(self._sample_rate * attack_s))
        floor = 0.001
        out: list[float] = []
        phase = 0.0
        filtered = 0.0
        for idx in range(sample_count):
            t = idx / float(self._sample_rate)
            if t >= decay_s:
                envelope = 0.0
            else:
                envelope = gain * ((floor / gain) ** (t / decay_s))
            if idx < attack_n:
                envelope *= idx / float(attack_n)
            phase += 2.0 * math.pi * freq_at(t) / self._sample_rate
            sample = wave(phase)
            if smooth > 0.0:
                filtered = (filtered * smooth) + (sample * (1.0 - smooth))
                sample = filtered
            out.append(sample * envelope)
        return out

    def _mix(self, parts: tuple[tuple[float, list[float]], ...]) -> pygame.mixer.Sound:
        total = 0
        placed: list[tuple[int, list[float]]] = []
        for offset_s, samples in parts:
            start = int(self._sample_rate * offset_s)
            placed.append((start, samples))
            total = max(total, start + len(samples))
        mixed = [0.0] * total
        for start, samples in placed:
            for idx, sample in enumerate(samples):
                mixed[start + idx] += sample
        return pygame.mixer.Sound(buffer=self._to_pcm(mixed).tobytes())

    def _to_pcm(self, samples: list[float]) -> array[int]:
        # Interleaved: the same value on every mixer channel.
        out = array("h")
        for sample in samples:
            value = int(max(-1.0, min(1.0, sample)) * self._amp)
            for _ in range(self._channels):
                out.append(value)
        return out
