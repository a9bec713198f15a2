from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from .clock import Clock
from .task_core import clamp01, wrap_angle

# Pointer may land slightly outside the drawn dial and still grab it.
HIT_TOLERANCE = 1.3
# One and a half turns of pointer travel sweeps the full [0, 1] range.
DRAG_SENSITIVITY = 1.0 / (math.pi * 1.5)
SLIDER_CUE_INTERVAL_S = 0.060

_PANEL_GAP_PX = 20.0
_PANEL_INSET_PX = 30.0


@dataclass(frozen=True, slots=True)
class GaugeRect:
    x: float
    y: float
    w: float
    h: float


@dataclass(frozen=True, slots=True)
class DialLayout:
    """Hit-test and drawing geometry in the surface's logical coordinates."""

    centers: tuple[tuple[float, float], ...]
    radius: float
    panel_width: float
    gauge: GaugeRect

    @classmethod
    def empty(cls) -> "DialLayout":
        return cls(centers=(), radius=0.0, panel_width=0.0, gauge=GaugeRect(0.0, 0.0, 0.0, 0.0))


def compute_dial_layout(width: float, height: float) -> DialLayout:
    w = max(1.0, float(width))
    h = max(1.0, float(height))

    spacing = w * 0.3
    center_x = w / 2.0
    dial_y = h * 0.35

    panel_w = spacing - _PANEL_GAP_PX
    max_radius = (panel_w - _PANEL_INSET_PX * 2.0) / 2.0
    radius = max(0.0, min(max_radius, h * 0.28))

    gauge_w = w * 0.7
    gauge = GaugeRect(x=(w - gauge_w) / 2.0, y=h * 0.75, w=gauge_w, h=h * 0.03)

    return DialLayout(
        centers=(
            (center_x - spacing, dial_y),
            (center_x, dial_y),
            (center_x + spacing, dial_y),
        ),
        radius=radius,
        panel_width=max(0.0, panel_w),
        gauge=gauge,
    )


@dataclass(frozen=True, slots=True)
class DragUpdate:
    node_index: int
    value: float
    play_slider: bool


@dataclass(slots=True)
class _DragSession:
    node_index: int
    start_angle: float
    start_value: float


class DialDragController:
    """Maps pointer press/move/release gestures onto dial values.

    The controller owns drag bookkeeping only. Node values are read on press
    and the resulting target value is handed back to the caller on move;
    writing it into simulation state is the caller's job.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        layout: DialLayout | None = None,
        sensitivity: float = DRAG_SENSITIVITY,
        slider_interval_s: float = SLIDER_CUE_INTERVAL_S,
    ) -> None:
        if sensitivity <= 0.0:
            raise ValueError("sensitivity must be > 0")
        if slider_interval_s < 0.0:
            raise ValueError("slider_interval_s must be >= 0")

        self._clock = clock
        self._layout = layout or DialLayout.empty()
        self._sensitivity = float(sensitivity)
        self._slider_interval_s = float(slider_interval_s)
        self._session: _DragSession | None = None
        self._last_slider_at_s: float | None = None

    @property
    def layout(self) -> DialLayout:
        return self._layout

    @property
    def dragging_node(self) -> int | None:
        return None if self._session is None else self._session.node_index

    def set_layout(self, layout: DialLayout) -> None:
        # An in-flight drag keeps its angle baseline across a resize.
        self._layout = layout

    def hit_test(self, x: float, y: float, *, active: Sequence[bool]) -> int | None:
        if not (math.isfinite(x) and math.isfinite(y)):
            return None
        reach = self._layout.radius * HIT_TOLERANCE
        for idx, (cx, cy) in enumerate(self._layout.centers):
            if idx >= len(active) or not active[idx]:
                continue
            if math.hypot(x - cx, y - cy) < reach:
                return idx
        return None

    def press(
        self,
        x: float,
        y: float,
        *,
        active: Sequence[bool],
        values: Sequence[float],
    ) -> int | None:
        hit = self.hit_test(x, y, active=active)
        if hit is None:
            return None
        cx, cy = self._layout.centers[hit]
        self._session = _DragSession(
            node_index=hit,
            start_angle=math.atan2(y - cy, x - cx),
            start_value=float(values[hit]),
        )
        return hit

    def move(self, x: float, y: float) -> DragUpdate | None:
        session = self._session
        if session is None:
            return None
        if not (math.isfinite(x) and math.isfinite(y)):
            return None
        if session.node_index >= len(self._layout.centers):
            return None

        cx, cy = self._layout.centers[session.node_index]
        angle = math.atan2(y - cy, x - cx)
        delta = wrap_angle(angle - session.start_angle)
        value = clamp01(session.start_value + delta * self._sensitivity)

        now = self._clock.now()
        play_slider = (
            self._last_slider_at_s is None
            or now - self._last_slider_at_s >= self._slider_interval_s
        )
        if play_slider:
            self._last_slider_at_s = now

        return DragUpdate(node_index=session.node_index, value=value, play_slider=play_slider)

    def release(self) -> None:
        self._session = None
