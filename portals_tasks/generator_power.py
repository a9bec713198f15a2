from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from enum import StrEnum

from .clock import Clock
from .dial_input import DialDragController, DialLayout
from .task_core import (
    CompletionSink,
    Cue,
    CueSink,
    RandomSource,
    SeededRng,
    clamp,
    clamp01,
    lerp,
    play_cue,
)

logger = logging.getLogger(__name__)

NODE_COUNT = 3
TASK_ID = "generator-power"


@dataclass(frozen=True, slots=True)
class DriftConfig:
    min_speed: float = 0.06
    max_speed: float = 0.25
    ramp_time_s: float = 40.0


@dataclass(frozen=True, slots=True)
class ZoneBands:
    underpower_max: float = 0.25
    safe_min: float = 0.35
    safe_max: float = 0.65
    overload_min: float = 0.75


@dataclass(frozen=True, slots=True)
class GeneratorPowerConfig:
    drift: DriftConfig = field(default_factory=DriftConfig)
    zones: ZoneBands = field(default_factory=ZoneBands)

    node_activation_s: tuple[float, float, float] = (0.0, 6.0, 14.0)
    node_phase_offsets: tuple[float, float, float] = (0.0, 2.1, 4.2)

    grace_period_s: float = 4.0
    stability_goal_s: float = 20.0
    milestones: tuple[float, ...] = (0.25, 0.50, 0.75)
    penalty_factor: float = 0.9

    cooldown_s: float = 3.0
    recovery_window_s: float = 3.0

    surge_threshold: float = 0.35
    surge_hysteresis: float = 0.05
    surge_duration_s: float = 1.5
    surge_push_per_s: float = 0.3

    value_floor: float = 0.02
    value_ceiling: float = 0.98
    max_frame_dt_s: float = 0.05


def validate_config(cfg: GeneratorPowerConfig) -> None:
    z = cfg.zones
    if not (0.0 <= z.underpower_max <= z.safe_min <= z.safe_max <= z.overload_min <= 1.0):
        raise ValueError("zone bands must be ordered within [0, 1]")
    if len(cfg.node_activation_s) != NODE_COUNT or len(cfg.node_phase_offsets) != NODE_COUNT:
        raise ValueError(f"exactly {NODE_COUNT} nodes are supported")
    if cfg.node_activation_s[0] != 0.0:
        raise ValueError("node 0 must be active from the start")
    if any(b < a for a, b in zip(cfg.node_activation_s, cfg.node_activation_s[1:])):
        raise ValueError("node activation times must be non-decreasing")
    if cfg.drift.ramp_time_s <= 0.0:
        raise ValueError("ramp_time_s must be > 0")
    if cfg.stability_goal_s <= 0.0:
        raise ValueError("stability_goal_s must be > 0")
    if cfg.grace_period_s < 0.0:
        raise ValueError("grace_period_s must be >= 0")
    if cfg.cooldown_s <= 0.0:
        raise ValueError("cooldown_s must be > 0")
    if cfg.recovery_window_s < 0.0:
        raise ValueError("recovery_window_s must be >= 0")
    if cfg.surge_duration_s <= 0.0:
        raise ValueError("surge_duration_s must be > 0")
    if cfg.surge_hysteresis < 0.0:
        raise ValueError("surge_hysteresis must be >= 0")
    if not (0.0 < cfg.penalty_factor <= 1.0):
        raise ValueError("penalty_factor must be in (0.0, 1.0]")
    if not (0.0 <= cfg.value_floor < cfg.value_ceiling <= 1.0):
        raise ValueError("value rail must satisfy 0 <= floor < ceiling <= 1")
    if cfg.max_frame_dt_s <= 0.0:
        raise ValueError("max_frame_dt_s must be > 0")
    if any(not (0.0 < m < 1.0) for m in cfg.milestones):
        raise ValueError("milestones must be fractions in (0, 1)")


class Zone(StrEnum):
    UNDERPOWER = "underpower"
    LOW_WARN = "low_warn"
    SAFE = "safe"
    HIGH_WARN = "high_warn"
    OVERLOAD = "overload"


def classify_zone(value: float, bands: ZoneBands) -> Zone:
    if value < bands.underpower_max:
        return Zone.UNDERPOWER
    if value < bands.safe_min:
        return Zone.LOW_WARN
    if value <= bands.safe_max:
        return Zone.SAFE
    if value < bands.overload_min:
        return Zone.HIGH_WARN
    return Zone.OVERLOAD


@dataclass(frozen=True, slots=True)
class DriftProfile:
    """Sum of sines over a node's drift phase plus a uniform noise term."""

    waves: tuple[tuple[float, float, float], ...]  # (frequency, offset, amplitude)
    noise: float

    def signal(self, phase: float, noise_sample: float) -> float:
        total = 0.0
        for frequency, offset, amplitude in self.waves:
            total += math.sin(phase * frequency + offset) * amplitude
        return total + (noise_sample - 0.5) * self.noise


# Later nodes get busier waveforms and more noise.
DRIFT_PROFILES: tuple[DriftProfile, ...] = (
    DriftProfile(waves=((0.8, 0.0, 0.6),), noise=0.05),
    DriftProfile(waves=((1.0, 0.0, 0.5), (2.0, 1.5, 0.3)), noise=0.08),
    DriftProfile(waves=((1.2, 0.0, 0.45), (2.5, 3.0, 0.3)), noise=0.12),
)


@dataclass(frozen=True, slots=True)
class PowerNode:
    index: int
    value: float = 0.5
    active: bool = False
    drift_phase: float = 0.0
    surging: bool = False
    surge_remaining: float = 0.0
    surge_armed: bool = True


@dataclass(frozen=True, slots=True)
class Cooldown:
    active: bool = False
    remaining: float = 0.0


@dataclass(frozen=True, slots=True)
class GeneratorState:
    """Whole simulation state for one attempt.

    ``recovery_until`` is a deadline on the same monotonic ``elapsed`` clock
    that drives node activation and the grace period; the recovery window is
    simply ``elapsed < recovery_until``.
    """

    nodes: tuple[PowerNode, ...]
    elapsed: float = 0.0
    aggregate_output: float = 0.5
    stability_time: float = 0.0
    cooldown: Cooldown = field(default_factory=Cooldown)
    recovery_until: float = 0.0
    completed: bool = False
    failures: int = 0
    surges: int = 0

    def in_recovery(self) -> bool:
        return self.elapsed < self.recovery_until

    def active_nodes(self) -> tuple[PowerNode, ...]:
        return tuple(n for n in self.nodes if n.active)


class StepEventKind(StrEnum):
    NODE_ACTIVATED = "node_activated"
    SURGE_STARTED = "surge_started"
    SURGE_ENDED = "surge_ended"
    MILESTONE = "milestone"
    FAILURE = "failure"
    RECOVERY = "recovery"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class StepEvent:
    kind: StepEventKind
    elapsed: float
    node_index: int | None = None
    fraction: float | None = None


@dataclass(frozen=True, slots=True)
class StepResult:
    state: GeneratorState
    cues: tuple[Cue, ...] = ()
    events: tuple[StepEvent, ...] = ()


@dataclass(slots=True)
class _StepLog:
    cues: list[Cue] = field(default_factory=list)
    events: list[StepEvent] = field(default_factory=list)

    def emit(
        self,
        kind: StepEventKind,
        *,
        elapsed: float,
        cue: Cue | None = None,
        node_index: int | None = None,
        fraction: float | None = None,
    ) -> None:
        if cue is not None:
            self.cues.append(cue)
        self.events.append(
            StepEvent(kind=kind, elapsed=elapsed, node_index=node_index, fraction=fraction)
        )


def new_generator_state(config: GeneratorPowerConfig | None = None) -> GeneratorState:
    cfg = config or GeneratorPowerConfig()
    validate_config(cfg)
    nodes = tuple(
        PowerNode(
            index=i,
            value=0.5,
            active=cfg.node_activation_s[i] <= 0.0,
            drift_phase=float(cfg.node_phase_offsets[i]),
        )
        for i in range(NODE_COUNT)
    )
    return GeneratorState(nodes=nodes, aggregate_output=aggregate_output(nodes))


def aggregate_output(nodes: tuple[PowerNode, ...]) -> float:
    values = [n.value for n in nodes if n.active]
    if not values:
        return 0.5
    return clamp01(sum(values) / len(values))


def drift_speed(elapsed: float, drift: DriftConfig) -> float:
    progress = min(elapsed / drift.ramp_time_s, 1.0)
    return lerp(drift.min_speed, drift.max_speed, progress)


def apply_penalty(stability_time: float, factor: float) -> float:
    return max(0.0, stability_time * factor)


def activate_nodes(state: GeneratorState, cfg: GeneratorPowerConfig, log: _StepLog) -> GeneratorState:
    nodes = list(state.nodes)
    changed = False
    for i, node in enumerate(nodes):
        if node.active or state.elapsed < cfg.node_activation_s[i]:
            continue
        # Freshly activated dials always start dead centre.
        nodes[i] = replace(node, active=True, value=0.5)
        changed = True
        log.emit(StepEventKind.NODE_ACTIVATED, elapsed=state.elapsed, cue=Cue.PHASE, node_index=i)
    if not changed:
        return state
    return replace(state, nodes=tuple(nodes))


def advance_drift(
    state: GeneratorState,
    dt: float,
    cfg: GeneratorPowerConfig,
    rng: RandomSource,
) -> GeneratorState:
    base_speed = drift_speed(state.elapsed, cfg.drift)
    nodes: list[PowerNode] = []
    for node in state.nodes:
        if not node.active:
            nodes.append(node)
            continue
        i = node.index
        speed = base_speed * (1.0 + i * 0.25)
        phase = node.drift_phase + dt * (0.5 + i * 0.15)
        signal = DRIFT_PROFILES[i].signal(phase, rng.random())
        push = dt * cfg.surge_push_per_s if node.surging else 0.0
        value = clamp(node.value + speed * dt * signal + push, cfg.value_floor, cfg.value_ceiling)
        nodes.append(replace(node, value=value, drift_phase=phase))
    return replace(state, nodes=tuple(nodes))


def update_surges(
    state: GeneratorState,
    dt: float,
    cfg: GeneratorPowerConfig,
    log: _StepLog,
) -> GeneratorState:
    in_recovery = state.in_recovery()
    rearm_above = cfg.surge_threshold + cfg.surge_hysteresis
    stability = state.stability_time
    surges = state.surges
    nodes: list[PowerNode] = []

    for node in state.nodes:
        if node.surging:
            remaining = node.surge_remaining - dt
            if remaining <= 0.0:
                node = replace(node, surging=False, surge_remaining=0.0)
                log.emit(StepEventKind.SURGE_ENDED, elapsed=state.elapsed, node_index=node.index)
            else:
                node = replace(node, surge_remaining=remaining)

        if node.active and not node.surging:
            if not in_recovery and node.surge_armed and node.value <= cfg.surge_threshold:
                node = replace(
                    node,
                    surging=True,
                    surge_remaining=cfg.surge_duration_s,
                    surge_armed=False,
                )
                stability = apply_penalty(stability, cfg.penalty_factor)
                surges += 1
                log.emit(
                    StepEventKind.SURGE_STARTED,
                    elapsed=state.elapsed,
                    cue=Cue.MISS,
                    node_index=node.index,
                )
            elif node.value > rearm_above and not node.surge_armed:
                node = replace(node, surge_armed=True)

        nodes.append(node)

    return replace(state, nodes=tuple(nodes), stability_time=stability, surges=surges)


def enter_cooldown(state: GeneratorState, cfg: GeneratorPowerConfig, log: _StepLog) -> GeneratorState:
    log.emit(StepEventKind.FAILURE, elapsed=state.elapsed, cue=Cue.MISS)
    logger.debug("overload at t=%.2fs, cooling down for %.1fs", state.elapsed, cfg.cooldown_s)
    return replace(
        state,
        stability_time=apply_penalty(state.stability_time, cfg.penalty_factor),
        cooldown=Cooldown(active=True, remaining=cfg.cooldown_s),
        failures=state.failures + 1,
    )


def tick_cooldown(
    state: GeneratorState,
    dt: float,
    cfg: GeneratorPowerConfig,
    log: _StepLog,
) -> GeneratorState:
    remaining = state.cooldown.remaining - dt
    if remaining > 0.0:
        return replace(state, cooldown=Cooldown(active=True, remaining=remaining))

    nodes = tuple(
        replace(n, value=0.5, surging=False, surge_remaining=0.0, surge_armed=True) if n.active else n
        for n in state.nodes
    )
    log.emit(StepEventKind.RECOVERY, elapsed=state.elapsed)
    logger.debug("cooldown over at t=%.2fs, recovery window %.1fs", state.elapsed, cfg.recovery_window_s)
    return replace(
        state,
        nodes=nodes,
        aggregate_output=aggregate_output(nodes),
        cooldown=Cooldown(),
        recovery_until=state.elapsed + cfg.recovery_window_s,
    )


def evaluate_zones(
    state: GeneratorState,
    dt: float,
    cfg: GeneratorPowerConfig,
    log: _StepLog,
) -> GeneratorState:
    bands = cfg.zones
    out = state.aggregate_output
    past_grace = state.elapsed >= cfg.grace_period_s
    active = state.active_nodes()

    # Success needs every dial in range; failure needs only one in the red.
    all_balanced = all(bands.underpower_max <= n.value <= bands.overload_min for n in active)
    in_safe = bands.safe_min <= out <= bands.safe_max

    if past_grace and in_safe and all_balanced:
        goal = cfg.stability_goal_s
        before = state.stability_time
        after = min(before + dt, goal)
        for mark in cfg.milestones:
            if before < mark * goal <= after:
                log.emit(StepEventKind.MILESTONE, elapsed=state.elapsed, cue=Cue.HIT, fraction=mark)
        state = replace(state, stability_time=after)
        if after >= goal:
            log.emit(StepEventKind.COMPLETED, elapsed=state.elapsed)
            return replace(state, completed=True)

    if past_grace and not state.in_recovery():
        any_red = any(n.value >= bands.overload_min for n in active)
        if out > bands.overload_min or any_red:
            state = enter_cooldown(state, cfg, log)

    return state


def step(
    state: GeneratorState,
    dt: float,
    *,
    config: GeneratorPowerConfig,
    rng: RandomSource,
) -> StepResult:
    """Advance the simulation by one frame.

    Order: activation, then either the cooldown timer or the full chain
    drift -> surges -> aggregate -> zones. A completed state is returned
    untouched.
    """

    if state.completed:
        return StepResult(state=state)

    dt = clamp(float(dt), 0.0, config.max_frame_dt_s)
    log = _StepLog()

    state = replace(state, elapsed=state.elapsed + dt)
    state = activate_nodes(state, config, log)

    if state.cooldown.active:
        state = tick_cooldown(state, dt, config, log)
    else:
        state = advance_drift(state, dt, config, rng)
        state = update_surges(state, dt, config, log)
        state = replace(state, aggregate_output=aggregate_output(state.nodes))
        state = evaluate_zones(state, dt, config, log)

    return StepResult(state=state, cues=tuple(log.cues), events=tuple(log.events))


def set_node_value(state: GeneratorState, index: int, value: float) -> GeneratorState:
    """Write a manual dial position; ignored while frozen or for idle nodes."""

    if state.completed or state.cooldown.active:
        return state
    if not (0 <= index < len(state.nodes)):
        return state
    node = state.nodes[index]
    if not node.active or not math.isfinite(value):
        return state
    nodes = list(state.nodes)
    nodes[index] = replace(node, value=clamp01(value))
    return replace(state, nodes=tuple(nodes))


class GeneratorPhase(StrEnum):
    RUNNING = "running"
    COOLDOWN = "cooldown"
    RECOVERY = "recovery"
    COMPLETED = "completed"
    CLOSED = "closed"


def phase_of(state: GeneratorState) -> GeneratorPhase:
    if state.completed:
        return GeneratorPhase.COMPLETED
    if state.cooldown.active:
        return GeneratorPhase.COOLDOWN
    if state.in_recovery():
        return GeneratorPhase.RECOVERY
    return GeneratorPhase.RUNNING


@dataclass(frozen=True, slots=True)
class NodeView:
    index: int
    value: float
    active: bool
    surging: bool
    zone: Zone


@dataclass(frozen=True, slots=True)
class GeneratorPowerSnapshot:
    """View model for the renderer (pure data)."""

    title: str
    phase: GeneratorPhase
    prompt: str
    elapsed_s: float
    nodes: tuple[NodeView, ...]
    aggregate_output: float
    aggregate_zone: Zone
    stability_time_s: float
    stability_goal_s: float
    stability_ratio: float
    cooldown_remaining_s: float
    cooldown_duration_s: float
    recovery_remaining_s: float
    failures: int
    surges: int
    dragging_node: int | None
    zones: ZoneBands


class GeneratorPowerEngine:
    """Frame-loop owner for the Generator Power task.

    Each ``update()`` runs exactly one simulation step with the clock delta
    clamped to ``max_frame_dt_s``. Pointer input lands between frames and
    only ever writes node values and drag bookkeeping.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        seed: int,
        config: GeneratorPowerConfig | None = None,
        cues: CueSink | None = None,
        completion: CompletionSink | None = None,
        rng: RandomSource | None = None,
        layout: DialLayout | None = None,
    ) -> None:
        cfg = config or GeneratorPowerConfig()
        validate_config(cfg)

        self._clock = clock
        self._seed = int(seed)
        self._cfg = cfg
        self._rng: RandomSource = rng if rng is not None else SeededRng(self._seed)
        self._cues = cues
        self._completion = completion

        self._state = new_generator_state(cfg)
        self._drag = DialDragController(clock=clock, layout=layout)
        self._last_update_at_s = self._clock.now()
        self._events: list[StepEvent] = []
        self._notified = False
        self._closed = False

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def config(self) -> GeneratorPowerConfig:
        return self._cfg

    @property
    def state(self) -> GeneratorState:
        return self._state

    @property
    def phase(self) -> GeneratorPhase:
        if self._closed:
            return GeneratorPhase.CLOSED
        return phase_of(self._state)

    @property
    def layout(self) -> DialLayout:
        return self._drag.layout

    def events(self) -> list[StepEvent]:
        return list(self._events)

    def update(self) -> StepResult | None:
        now = self._clock.now()
        dt = now - self._last_update_at_s
        self._last_update_at_s = now
        return self.advance(dt)

    def advance(self, dt: float) -> StepResult | None:
        if self._closed or self._state.completed:
            return None

        result = step(self._state, dt, config=self._cfg, rng=self._rng)
        self._state = result.state
        self._events.extend(result.events)

        for cue in result.cues:
            play_cue(self._cues, cue)

        for evt in result.events:
            if evt.kind is StepEventKind.FAILURE:
                self._drag.release()
            elif evt.kind is StepEventKind.COMPLETED:
                self._drag.release()
                self._notify_completion()

        return result

    def set_layout(self, layout: DialLayout) -> None:
        self._drag.set_layout(layout)

    def press(self, x: float, y: float) -> int | None:
        if self._closed or self._state.completed or self._state.cooldown.active:
            return None
        hit = self._drag.press(
            x,
            y,
            active=[n.active for n in self._state.nodes],
            values=[n.value for n in self._state.nodes],
        )
        if hit is not None:
            play_cue(self._cues, Cue.TICK)
        return hit

    def move(self, x: float, y: float) -> float | None:
        if self._closed:
            return None
        update = self._drag.move(x, y)
        if update is None:
            return None
        before = self._state
        self._state = set_node_value(before, update.node_index, update.value)
        if self._state is before:
            return None
        if update.play_slider:
            play_cue(self._cues, Cue.SLIDER)
        return self._state.nodes[update.node_index].value

    def release(self) -> None:
        self._drag.release()

    def set_node_value(self, index: int, value: float) -> None:
        """Synthetic input path for scripted drivers."""

        self._state = set_node_value(self._state, index, value)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._drag.release()

    def snapshot(self) -> GeneratorPowerSnapshot:
        s = self._state
        bands = self._cfg.zones
        goal = self._cfg.stability_goal_s
        return GeneratorPowerSnapshot(
            title="Generator Power",
            phase=self.phase,
            prompt=self.current_prompt(),
            elapsed_s=float(s.elapsed),
            nodes=tuple(
                NodeView(
                    index=n.index,
                    value=float(n.value),
                    active=n.active,
                    surging=n.surging,
                    zone=classify_zone(n.value, bands),
                )
                for n in s.nodes
            ),
            aggregate_output=float(s.aggregate_output),
            aggregate_zone=classify_zone(s.aggregate_output, bands),
            stability_time_s=float(s.stability_time),
            stability_goal_s=float(goal),
            stability_ratio=min(1.0, s.stability_time / goal),
            cooldown_remaining_s=float(s.cooldown.remaining) if s.cooldown.active else 0.0,
            cooldown_duration_s=float(self._cfg.cooldown_s),
            recovery_remaining_s=max(0.0, s.recovery_until - s.elapsed),
            failures=int(s.failures),
            surges=int(s.surges),
            dragging_node=self._drag.dragging_node,
            zones=bands,
        )

    def current_prompt(self) -> str:
        phase = self.phase
        if phase is GeneratorPhase.COMPLETED:
            return "Generator stable. Power restored."
        if phase is GeneratorPhase.CLOSED:
            return ""
        if phase is GeneratorPhase.COOLDOWN:
            return "OVERLOAD - generator cooling down"
        if phase is GeneratorPhase.RECOVERY:
            return "Recovering - stabilise the dials"
        if self._state.elapsed < self._cfg.grace_period_s:
            return "Drag the dials to keep total output in the green band."
        return "Hold total output in the green band."

    def _notify_completion(self) -> None:
        if self._notified:
            return
        self._notified = True
        if self._completion is None:
            return
        try:
            self._completion.notify_task_complete(TASK_ID)
        except Exception:
            logger.exception("completion notification for %s failed", TASK_ID)


def build_generator_power_task(
    *,
    clock: Clock,
    seed: int,
    config: GeneratorPowerConfig | None = None,
    cues: CueSink | None = None,
    completion: CompletionSink | None = None,
    rng: RandomSource | None = None,
    layout: DialLayout | None = None,
) -> GeneratorPowerEngine:
    return GeneratorPowerEngine(
        clock=clock,
        seed=seed,
        config=config,
        cues=cues,
        completion=completion,
        rng=rng,
        layout=layout,
    )
