"""Pygame shell for the Portals task suite.

Hosts the Generator Power task: three drifting dials that must be dragged to
keep total output in the green band until the stability bar fills.

Deterministic timing/state lives in portals_tasks/generator_power.py; this
module only draws snapshots, forwards pointer input and plays sound.
"""

from __future__ import annotations

import logging
import math
import os
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import pygame

from .audio import PygameCueSink
from .clock import Clock, RealClock
from .dial_input import DialLayout, compute_dial_layout
from .generator_power import (
    GeneratorPhase,
    GeneratorPowerEngine,
    GeneratorPowerSnapshot,
    StepEventKind,
    Zone,
    build_generator_power_task,
)
from .task_core import CueSink, NullCueSink, SeededRng
from .task_shell import Bridge, TaskShell

logger = logging.getLogger(__name__)

SEED_ENV = "PORTALS_TASKS_SEED"
MUTE_ENV = "PORTALS_TASKS_MUTE"

WINDOW_SIZE = (960, 600)
TARGET_FPS = 60
VOLUME_STEP = 0.1

PRIMARY = (254, 206, 84)
SECONDARY_1 = (177, 174, 164)
SECONDARY_2 = (82, 143, 131)
SUCCESS = (68, 255, 162)
ERROR = (255, 68, 68)
BG = (14, 21, 25)
PANEL_BG = (17, 24, 29)
DIAL_BG = (20, 28, 32)

ZONE_COLORS: dict[Zone, tuple[int, int, int]] = {
    Zone.UNDERPOWER: SECONDARY_2,
    Zone.LOW_WARN: SECONDARY_2,
    Zone.SAFE: SUCCESS,
    Zone.HIGH_WARN: PRIMARY,
    Zone.OVERLOAD: ERROR,
}

# Dial sweep: 0.75*pi -> 2.25*pi, clockwise in screen space.
ARC_START = math.pi * 0.75
ARC_SPAN = math.pi * 1.5

_MOUSE_EVENTS = (pygame.MOUSEBUTTONDOWN, pygame.MOUSEMOTION, pygame.MOUSEBUTTONUP)


class Screen(Protocol):
    def handle_event(self, event: pygame.event.Event) -> None: ...
    def render(self, surface: pygame.Surface) -> None: ...


@dataclass(frozen=True, slots=True)
class MenuItem:
    label: str
    action: Callable[[], None]


class App:
    def __init__(self, surface: pygame.Surface, *, bridge: Bridge | None = None) -> None:
        self._surface = surface
        self._bridge = bridge
        self._screens: list[Screen] = []
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def surface(self) -> pygame.Surface:
        return self._surface

    @property
    def bridge(self) -> Bridge | None:
        return self._bridge

    def push(self, screen: Screen) -> None:
        self._screens.append(screen)

    def pop(self) -> None:
        # Never pop the last/root screen; root handles its own quit/back behavior.
        if len(self._screens) > 1:
            self._screens.pop()

    def quit(self) -> None:
        self._running = False

    def shutdown(self) -> None:
        for screen in reversed(self._screens):
            teardown = getattr(screen, "teardown", None)
            if callable(teardown):
                teardown()
        self._screens.clear()

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.QUIT:
            self.quit()
            return
        if event.type == pygame.VIDEORESIZE:
            self._surface = pygame.display.get_surface() or self._surface
        if not self._screens:
            return
        self._screens[-1].handle_event(event)

    def render(self) -> None:
        if not self._screens:
            return
        self._screens[-1].render(self._surface)


class MenuScreen:
    def __init__(self, app: App, title: str, items: list[MenuItem], *, is_root: bool = False) -> None:
        self._app = app
        self._title = title
        self._items = items
        self._selected = 0
        self._is_root = is_root
        self._title_font = pygame.font.Font(None, 42)
        self._item_font = pygame.font.Font(None, 32)
        self._hint_font = pygame.font.Font(None, 22)

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type != pygame.KEYDOWN:
            return
        if event.key in (pygame.K_UP, pygame.K_w):
            self._move(-1)
        elif event.key in (pygame.K_DOWN, pygame.K_s):
            self._move(1)
        elif event.key in (pygame.K_RETURN, pygame.K_KP_ENTER, pygame.K_SPACE):
            if self._items:
                self._items[self._selected].action()
        elif event.key in (pygame.K_ESCAPE, pygame.K_BACKSPACE):
            if self._is_root:
                self._app.quit()
            else:
                self._app.pop()

    def _move(self, delta: int) -> None:
        if not self._items:
            return
        self._selected = (self._selected + delta) % len(self._items)

    def render(self, surface: pygame.Surface) -> None:
        w, h = surface.get_size()
        surface.fill(BG)

        margin = max(10, min(26, w // 34))
        frame = pygame.Rect(margin, margin, max(260, w - margin * 2), max(220, h - margin * 2))
        pygame.draw.rect(surface, PANEL_BG, frame, border_radius=18)
        pygame.draw.rect(surface, PRIMARY, frame, 2, border_radius=18)

        title = self._title_font.render(self._title, True, PRIMARY)
        surface.blit(title, title.get_rect(midtop=(frame.centerx, frame.y + 24)))

        row_h = 44
        y = frame.y + 100
        for idx, item in enumerate(self._items):
            row = pygame.Rect(frame.x + 60, y, frame.w - 120, row_h)
            selected = idx == self._selected
            pygame.draw.rect(surface, PRIMARY if selected else DIAL_BG, row, border_radius=10)
            color = BG if selected else (235, 235, 240)
            text = self._item_font.render(item.label, True, color)
            surface.blit(text, text.get_rect(midleft=(row.x + 16, row.centery)))
            y += row_h + 10

        foot = self._hint_font.render("Enter: Select  |  Esc: Back", True, SECONDARY_1)
        surface.blit(foot, foot.get_rect(midbottom=(frame.centerx, frame.bottom - 10)))


@dataclass(slots=True)
class _Spark:
    x: float
    y: float
    vx: float
    vy: float
    life: float
    max_life: float
    size: float


class SparkField:
    """Decorative spark particles; never feeds back into the simulation."""

    GRAVITY = 400.0

    def __init__(self, *, seed: int) -> None:
        self._rng = SeededRng(seed)
        self._sparks: list[_Spark] = []

    def __len__(self) -> int:
        return len(self._sparks)

    def burst(self, x: float, y: float, count: int = 25) -> None:
        for _ in range(count):
            self.spawn(x, y)

    def spawn(self, x: float, y: float) -> None:
        r = self._rng
        life = r.uniform(0.5, 1.3)
        self._sparks.append(
            _Spark(
                x=x,
                y=y,
                vx=r.uniform(-150.0, 150.0),
                vy=r.uniform(-350.0, -100.0),
                life=life,
                max_life=life,
                size=r.uniform(2.0, 5.0),
            )
        )

    def update(self, dt: float, *, snap: GeneratorPowerSnapshot, width: int, height: int) -> None:
        r = self._rng
        if snap.phase is GeneratorPhase.COOLDOWN and r.random() < 0.3:
            self.spawn(width * r.uniform(0.2, 0.8), height * r.uniform(0.5, 0.8))
        elif (
            snap.phase in (GeneratorPhase.RUNNING, GeneratorPhase.RECOVERY)
            and snap.aggregate_output > snap.zones.overload_min
            and r.random() < 0.15
        ):
            self.spawn(width / 2.0, height * 0.72)

        alive: list[_Spark] = []
        for s in self._sparks:
            s.x += s.vx * dt
            s.y += s.vy * dt
            s.vy += self.GRAVITY * dt
            s.life -= dt
            if s.life > 0.0:
                alive.append(s)
        self._sparks = alive

    def draw(self, surface: pygame.Surface) -> None:
        for s in self._sparks:
            ratio = max(0.0, min(1.0, s.life / s.max_life))
            color = (255, int(140 + 100 * ratio), int(60 * ratio))
            pygame.draw.circle(surface, color, (int(s.x), int(s.y)), max(1, int(s.size * ratio)))


def _blend(color: tuple[int, int, int], alpha: float, bg: tuple[int, int, int] = BG) -> tuple[int, int, int]:
    a = max(0.0, min(1.0, alpha))
    return (
        int(bg[0] + (color[0] - bg[0]) * a),
        int(bg[1] + (color[1] - bg[1]) * a),
        int(bg[2] + (color[2] - bg[2]) * a),
    )


def _polar(cx: float, cy: float, angle: float, radius: float) -> tuple[int, int]:
    return int(round(cx + math.cos(angle) * radius)), int(round(cy + math.sin(angle) * radius))


def _draw_arc(
    surface: pygame.Surface,
    color: tuple[int, int, int],
    center: tuple[float, float],
    radius: float,
    start: float,
    end: float,
    width: int,
) -> None:
    steps = max(2, int(abs(end - start) * radius / 6.0))
    points = [_polar(center[0], center[1], start + (end - start) * i / steps, radius) for i in range(steps + 1)]
    pygame.draw.lines(surface, color, False, points, width)


class GeneratorPowerScreen:
    """Draws one Generator Power attempt and routes pointer input into it."""

    def __init__(
        self,
        app: App,
        *,
        clock: Clock,
        seed: int,
        audio: PygameCueSink | None,
    ) -> None:
        self._app = app
        self._clock = clock
        self._audio = audio
        cues: CueSink = audio if audio is not None else NullCueSink()

        self._shell = TaskShell(clock=clock, cues=cues, bridge=app.bridge)
        self._engine: GeneratorPowerEngine = build_generator_power_task(
            clock=clock,
            seed=seed,
            cues=cues,
            completion=self._shell,
        )
        self._sparks = SparkField(seed=seed ^ 0x5A7C)
        self._layout_size: tuple[int, int] = (0, 0)
        self._last_frame_at_s = clock.now()
        self._torn_down = False

        self._label_font = pygame.font.Font(None, 26)
        self._small_font = pygame.font.Font(None, 22)
        self._big_font = pygame.font.Font(None, 64)
        self._mid_font = pygame.font.Font(None, 40)

        self._sync_layout(app.surface.get_size())

    @property
    def engine(self) -> GeneratorPowerEngine:
        return self._engine

    @property
    def shell(self) -> TaskShell:
        return self._shell

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.KEYDOWN:
            if event.key == pygame.K_ESCAPE:
                self._close()
            elif event.key in (pygame.K_RETURN, pygame.K_KP_ENTER) and self._shell.continue_visible():
                self._close()
            elif event.key == pygame.K_m and self._audio is not None:
                self._audio.toggle()
            elif event.key in (pygame.K_MINUS, pygame.K_KP_MINUS) and self._audio is not None:
                self._audio.set_volume(self._audio.volume - VOLUME_STEP)
            elif event.key in (pygame.K_EQUALS, pygame.K_KP_PLUS) and self._audio is not None:
                self._audio.set_volume(self._audio.volume + VOLUME_STEP)
            return

        if event.type in (pygame.VIDEORESIZE, pygame.WINDOWSIZECHANGED):
            self._sync_layout(self._app.surface.get_size())
            return

        if event.type in _MOUSE_EVENTS and getattr(event, "touch", False):
            # SDL mirrors every touch as a mouse event; the FINGER* path owns touches.
            return

        if event.type == pygame.MOUSEBUTTONDOWN and event.button == 1:
            self._pointer_down(*event.pos)
        elif event.type == pygame.MOUSEMOTION:
            self._engine.move(*event.pos)
        elif event.type == pygame.MOUSEBUTTONUP and event.button == 1:
            self._engine.release()
        elif event.type == pygame.FINGERDOWN:
            self._pointer_down(*self._finger_pos(event))
        elif event.type == pygame.FINGERMOTION:
            self._engine.move(*self._finger_pos(event))
        elif event.type == pygame.FINGERUP:
            self._engine.release()

    def _pointer_down(self, x: float, y: float) -> None:
        if self._shell.continue_visible():
            self._close()
            return
        self._engine.press(x, y)

    def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self._engine.close()
        if self._audio is not None:
            self._audio.stop()

    def render(self, surface: pygame.Surface) -> None:
        size = surface.get_size()
        if size != self._layout_size:
            self._sync_layout(size)

        now = self._clock.now()
        frame_dt = min(0.05, max(0.0, now - self._last_frame_at_s))
        self._last_frame_at_s = now

        result = self._engine.update()
        snap = self._engine.snapshot()
        w, h = size

        if result is not None:
            for evt in result.events:
                if evt.kind is StepEventKind.FAILURE:
                    self._sparks.burst(w / 2.0, h * 0.72)
                elif evt.kind is StepEventKind.COMPLETED and self._audio is not None:
                    self._audio.stop_hum()
        self._sparks.update(frame_dt, snap=snap, width=w, height=h)

        if self._audio is not None and snap.phase in (
            GeneratorPhase.RUNNING,
            GeneratorPhase.RECOVERY,
            GeneratorPhase.COOLDOWN,
        ):
            self._audio.sync_hum(output=snap.aggregate_output, alarm=snap.phase is GeneratorPhase.COOLDOWN)

        surface.fill(BG)
        layout = self._engine.layout
        for node in snap.nodes:
            self._draw_dial(surface, snap, layout, node.index)
        self._draw_gauge(surface, snap, layout)
        self._draw_stability_bar(surface, snap)
        self._sparks.draw(surface)

        prompt = self._small_font.render(snap.prompt, True, SECONDARY_1)
        surface.blit(prompt, prompt.get_rect(midtop=(w // 2, 10)))

        if snap.phase is GeneratorPhase.COOLDOWN:
            self._draw_cooldown_overlay(surface, snap)
        if self._shell.completion_visible():
            self._draw_completion_overlay(surface)

    def _sync_layout(self, size: tuple[int, int]) -> None:
        self._layout_size = size
        self._engine.set_layout(compute_dial_layout(*size))

    def _finger_pos(self, event: pygame.event.Event) -> tuple[float, float]:
        w, h = self._app.surface.get_size()
        return float(event.x) * w, float(event.y) * h

    def _close(self) -> None:
        self.teardown()
        self._shell.close()
        self._app.pop()

    def _draw_dial(
        self,
        surface: pygame.Surface,
        snap: GeneratorPowerSnapshot,
        layout: DialLayout,
        index: int,
    ) -> None:
        if index >= len(layout.centers) or layout.radius <= 0.0:
            return
        node = snap.nodes[index]
        cx, cy = layout.centers[index]
        r = layout.radius
        alpha = 1.0 if node.active else 0.25

        pad_v = r * 0.28
        panel = pygame.Rect(
            int(cx - layout.panel_width / 2.0),
            int(cy - r - pad_v),
            int(layout.panel_width),
            int(2.0 * (r + pad_v)),
        )
        pygame.draw.rect(surface, _blend(PANEL_BG, alpha), panel, border_radius=25)

        center = (int(cx), int(cy))
        pygame.draw.circle(surface, _blend(DIAL_BG, alpha), center, int(r))
        border = ERROR if node.surging else _blend(PRIMARY, 0.45)
        if node.surging and int(snap.elapsed_s * 6.0) % 2 == 0:
            pygame.draw.circle(surface, _blend(ERROR, 0.5), center, int(r + 6), 3)
        pygame.draw.circle(surface, _blend(border, alpha), center, int(r), 3)

        for t in range(21):
            angle = ARC_START + (t / 20.0) * ARC_SPAN
            inner = r * (0.72 if t % 5 == 0 else 0.78)
            pygame.draw.line(
                surface,
                _blend(SECONDARY_1, 0.6 * alpha),
                _polar(cx, cy, angle, inner),
                _polar(cx, cy, angle, r * 0.88),
                2 if t % 5 == 0 else 1,
            )

        bands = snap.zones
        band_r = r * 0.93
        _draw_arc(surface, _blend(SUCCESS, 0.7 * alpha), (cx, cy), band_r,
                  ARC_START + bands.safe_min * ARC_SPAN, ARC_START + bands.safe_max * ARC_SPAN, 4)
        _draw_arc(surface, _blend(ERROR, 0.7 * alpha), (cx, cy), band_r,
                  ARC_START + bands.overload_min * ARC_SPAN, ARC_START + ARC_SPAN, 4)

        needle = ARC_START + node.value * ARC_SPAN
        tip = _polar(cx, cy, needle, r * 0.68)
        pygame.draw.line(surface, _blend(PRIMARY, alpha), center, tip, 3)
        pygame.draw.circle(surface, _blend(PRIMARY, alpha), tip, 4)
        pygame.draw.circle(surface, _blend(SECONDARY_1, alpha), center, 6)

        bar_h = r * 1.6
        bar = pygame.Rect(int(cx + r + 16), int(cy - bar_h / 2.0), 12, int(bar_h))
        pygame.draw.rect(surface, _blend(PRIMARY, 0.15 * alpha), bar, border_radius=5)
        fill_h = max(2, int(bar_h * node.value))
        fill = pygame.Rect(bar.x, bar.bottom - fill_h, bar.w, fill_h)
        pygame.draw.rect(surface, _blend(ZONE_COLORS[node.zone], alpha), fill, border_radius=5)

        dot = (panel.x + 22, panel.y + 22)
        pygame.draw.circle(surface, SUCCESS if node.active else _blend(SECONDARY_1, 0.3), dot, 6)

        label = self._label_font.render(f"NODE {index + 1}", True, _blend(PRIMARY, alpha))
        surface.blit(label, label.get_rect(midtop=(int(cx), panel.bottom + 6)))

    def _draw_gauge(self, surface: pygame.Surface, snap: GeneratorPowerSnapshot, layout: DialLayout) -> None:
        g = layout.gauge
        if g.w <= 0.0:
            return
        rect = pygame.Rect(int(g.x), int(g.y), int(g.w), max(4, int(g.h)))
        bands = snap.zones
        segments = (
            (0.0, bands.safe_min, SECONDARY_2),
            (bands.safe_min, bands.safe_max, SUCCESS),
            (bands.safe_max, bands.overload_min, PRIMARY),
            (bands.overload_min, 1.0, ERROR),
        )
        for lo, hi, color in segments:
            seg = pygame.Rect(rect.x + int(lo * rect.w), rect.y, max(1, int((hi - lo) * rect.w)), rect.h)
            pygame.draw.rect(surface, _blend(color, 0.55), seg)

        zone = snap.aggregate_zone
        if snap.phase is not GeneratorPhase.COOLDOWN:
            if zone is Zone.OVERLOAD:
                glow = _blend(ERROR, 0.25 + 0.1 * math.sin(snap.elapsed_s * 8.0))
            elif zone is Zone.SAFE:
                glow = _blend(SUCCESS, 0.18 + 0.06 * math.sin(snap.elapsed_s * 3.0))
            else:
                glow = _blend(PRIMARY, 0.18 + 0.08 * math.sin(snap.elapsed_s * 5.0))
            pygame.draw.rect(surface, glow, rect.inflate(6, 6), 2, border_radius=rect.h // 2 + 3)
        pygame.draw.rect(surface, _blend(PRIMARY, 0.4), rect, 1, border_radius=rect.h // 2)

        marker_x = rect.x + int(snap.aggregate_output * rect.w)
        size = max(6, int(rect.h * 0.8))
        top = rect.y - 4
        pygame.draw.polygon(
            surface,
            (245, 245, 245),
            [(marker_x, top), (marker_x - size, top - size), (marker_x + size, top - size)],
        )

        label = self._small_font.render("TOTAL OUTPUT", True, PRIMARY)
        surface.blit(label, label.get_rect(midtop=(rect.centerx, rect.bottom + 10)))
        for text, pos in (("LOW", 0.15), ("SAFE", 0.5), ("OVERLOAD", 0.88)):
            zl = self._small_font.render(text, True, SECONDARY_1)
            surface.blit(zl, zl.get_rect(midtop=(rect.x + int(pos * rect.w), rect.bottom + 32)))

    def _draw_stability_bar(self, surface: pygame.Surface, snap: GeneratorPowerSnapshot) -> None:
        w, h = surface.get_size()
        bar = pygame.Rect(int(w * 0.15), int(h * 0.93), int(w * 0.7), 10)
        pygame.draw.rect(surface, DIAL_BG, bar, border_radius=5)
        fill_w = int(bar.w * snap.stability_ratio)
        if fill_w > 0:
            color = SUCCESS if snap.stability_ratio >= 1.0 else PRIMARY
            pygame.draw.rect(surface, color, pygame.Rect(bar.x, bar.y, fill_w, bar.h), border_radius=5)

    def _draw_cooldown_overlay(self, surface: pygame.Surface, snap: GeneratorPowerSnapshot) -> None:
        w, h = surface.get_size()
        shade = pygame.Surface((w, h), pygame.SRCALPHA)
        shade.fill((40, 0, 0, 150))
        surface.blit(shade, (0, 0))

        cx, cy = w // 2, h // 2
        title = self._mid_font.render("OVERLOAD", True, ERROR)
        surface.blit(title, title.get_rect(center=(cx, cy - 70)))

        seconds = max(0, math.ceil(snap.cooldown_remaining_s))
        count = self._big_font.render(str(seconds), True, (245, 245, 245))
        surface.blit(count, count.get_rect(center=(cx, cy)))

        progress = 0.0
        if snap.cooldown_duration_s > 0.0:
            progress = snap.cooldown_remaining_s / snap.cooldown_duration_s
        if progress > 0.0:
            start = -math.pi / 2.0
            _draw_arc(surface, ERROR, (cx, cy), 48.0, start, start + progress * 2.0 * math.pi, 4)

    def _draw_completion_overlay(self, surface: pygame.Surface) -> None:
        w, h = surface.get_size()
        shade = pygame.Surface((w, h), pygame.SRCALPHA)
        shade.fill((0, 30, 16, 170))
        surface.blit(shade, (0, 0))
        title = self._mid_font.render("POWER RESTORED", True, SUCCESS)
        surface.blit(title, title.get_rect(center=(w // 2, h // 2 - 20)))
        if self._shell.continue_visible():
            hint = self._label_font.render("Press Enter or click to continue", True, (235, 235, 240))
            surface.blit(hint, hint.get_rect(center=(w // 2, h // 2 + 30)))


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def _new_seed() -> int:
    raw = os.environ.get(SEED_ENV, "").strip()
    if raw:
        try:
            return int(raw)
        except ValueError:
            logger.warning("ignoring non-integer %s=%r", SEED_ENV, raw)
    return random.SystemRandom().randint(1, 2**31 - 1)


def run(
    *,
    max_frames: int | None = None,
    event_injector: Callable[[int], None] | None = None,
    bridge: Bridge | None = None,
) -> int:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    pygame.mixer.pre_init(
        PygameCueSink.MIXER_RATE,
        PygameCueSink.MIXER_SIZE,
        PygameCueSink.MIXER_CHANNELS,
        PygameCueSink.MIXER_BUFFER,
    )
    pygame.init()
    pygame.display.set_caption("Portals - Generator Power")
    surface = pygame.display.set_mode(WINDOW_SIZE, pygame.RESIZABLE)

    clock = pygame.time.Clock()

    app = App(surface=surface, bridge=bridge)
    real_clock = RealClock()
    audio = None if _env_flag(MUTE_ENV) else PygameCueSink()

    def open_generator_power() -> None:
        app.push(GeneratorPowerScreen(app, clock=real_clock, seed=_new_seed(), audio=audio))

    app.push(
        MenuScreen(
            app,
            "Storage Bay",
            [
                MenuItem("Generator Power", open_generator_power),
                MenuItem("Quit", app.quit),
            ],
            is_root=True,
        )
    )

    frame = 0
    try:
        while app.running:
            if event_injector is not None:
                event_injector(frame)

            for event in pygame.event.get():
                app.handle_event(event)

            app.render()

            pygame.display.flip()

            frame += 1
            if max_frames is not None and frame >= max_frames:
                break

            clock.tick(TARGET_FPS)
    finally:
        app.shutdown()
        pygame.quit()

    return 0
