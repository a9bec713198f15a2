from __future__ import annotations

import logging
import math
import random
from enum import StrEnum
from typing import Protocol

logger = logging.getLogger(__name__)


class Cue(StrEnum):
    """Named audio cues shared by every task in the suite."""

    TICK = "tick"
    WHOOSH = "whoosh"
    HIT = "hit"
    MISS = "miss"
    SUCCESS = "success"
    SLIDER = "slider"
    PHASE = "phase"
    ALIGN = "align"


class CueSink(Protocol):
    """Fire-and-forget audio cue playback."""

    def play(self, cue: Cue) -> None:
        ...


class CompletionSink(Protocol):
    """Receives the one-shot "task complete" signal for an attempt."""

    def notify_task_complete(self, task_id: str) -> None:
        ...


class RandomSource(Protocol):
    """Uniform [0, 1) source feeding per-frame noise terms."""

    def random(self) -> float:
        ...


class NullCueSink:
    """Cue sink used when audio is unavailable or muted."""

    def play(self, cue: Cue) -> None:
        _ = cue


def play_cue(sink: CueSink | None, cue: Cue) -> None:
    """Play a cue without ever letting a sink failure reach the caller."""

    if sink is None:
        return
    try:
        sink.play(cue)
    except Exception:
        logger.warning("cue %s failed to play", cue.value, exc_info=True)


class SeededRng:
    """Simple seeded RNG wrapper to keep deterministic streams explicit."""

    def __init__(self, seed: int) -> None:
        self._rng = random.Random(int(seed))

    def random(self) -> float:
        return self._rng.random()

    def uniform(self, a: float, b: float) -> float:
        return self._rng.uniform(a, b)


def lerp(a: float, b: float, t: float) -> float:
    """Linear interpolation with t clamped to [0, 1]."""

    if t <= 0.0:
        return float(a)
    if t >= 1.0:
        return float(b)
    return float(a + (b - a) * t)


def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x <= lo else hi if x >= hi else float(x)


def clamp01(x: float) -> float:
    return 0.0 if x <= 0.0 else 1.0 if x >= 1.0 else float(x)


def wrap_angle(rad: float) -> float:
    """Normalize an angle difference into (-pi, pi]."""

    two_pi = 2.0 * math.pi
    wrapped = math.fmod(rad + math.pi, two_pi)
    if wrapped <= 0.0:
        wrapped += two_pi
    return wrapped - math.pi
