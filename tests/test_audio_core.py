from __future__ import annotations

import os

import pytest

os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")


def test_cue_sink_controls_work_with_or_without_a_mixer() -> None:
    from portals_tasks.audio import PygameCueSink
    from portals_tasks.task_core import Cue

    sink = PygameCueSink(volume=0.6)
    try:
        assert sink.enabled
        sink.set_volume(1.7)
        assert sink.volume == 1.0
        sink.set_volume(-0.2)
        assert sink.volume == 0.0
        sink.set_volume(0.4)
        assert sink.volume == pytest.approx(0.4)

        for cue in Cue:
            sink.play(cue)
        sink.sync_hum(output=0.5, alarm=False)
        sink.sync_hum(output=0.9, alarm=True)

        assert sink.toggle() is False
        sink.play(Cue.HIT)
        assert sink.toggle() is True
    finally:
        sink.stop()
        sink.stop()


def test_sounds_keep_their_length_when_mixer_was_opened_elsewhere() -> None:
    import pygame

    from portals_tasks.audio import PygameCueSink
    from portals_tasks.task_core import Cue

    # pygame.init() opens the mixer in its own default format, not ours.
    pygame.mixer.quit()
    try:
        pygame.mixer.init(frequency=44100, size=-16, channels=2)
    except pygame.error:
        pytest.skip("no audio device")

    sink = PygameCueSink()
    try:
        if not sink.available:
            pytest.skip("mixer refused the cue buffers")
        assert pygame.mixer.get_init()[2] == 2
        assert sink.cue_length_s(Cue.TICK) == pytest.approx(0.05, abs=0.002)
        assert sink.cue_length_s(Cue.MISS) == pytest.approx(0.20, abs=0.002)
        assert sink.hum_loop_length_s() == pytest.approx(1.0, abs=0.002)
    finally:
        sink.stop()
        pygame.mixer.quit()


class _StuckChannel:
    def stop(self) -> None:
        raise RuntimeError("device lost")


def test_failed_hum_stop_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    import logging

    from portals_tasks.audio import PygameCueSink

    sink = PygameCueSink()
    if not sink.available:
        pytest.skip("no audio device")
    sink._hum_channel = _StuckChannel()

    with caplog.at_level(logging.DEBUG, logger="portals_tasks.audio"):
        sink.stop_hum()

    assert "hum stop failed" in caplog.text
