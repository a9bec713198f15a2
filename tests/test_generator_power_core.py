from __future__ import annotations

import math
import random

import pytest

from portals_tasks.generator_power import (
    DRIFT_PROFILES,
    DriftConfig,
    GeneratorPhase,
    GeneratorPowerConfig,
    GeneratorState,
    PowerNode,
    StepEventKind,
    StepResult,
    Zone,
    ZoneBands,
    aggregate_output,
    classify_zone,
    drift_speed,
    new_generator_state,
    phase_of,
    set_node_value,
    step,
    validate_config,
)
from portals_tasks.task_core import Cue, SeededRng

# Exactly representable, so accumulated elapsed time hits boundaries exactly.
DT = 1.0 / 32.0

CALM = GeneratorPowerConfig(drift=DriftConfig(min_speed=0.0, max_speed=0.0))
CALM_ALL_ACTIVE = GeneratorPowerConfig(
    drift=DriftConfig(min_speed=0.0, max_speed=0.0),
    node_activation_s=(0.0, 0.0, 0.0),
)


class FixedRandom:
    def __init__(self, value: float = 0.5) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def _advance(
    state: GeneratorState,
    frames: int,
    *,
    config: GeneratorPowerConfig = CALM,
    hold: dict[int, float] | None = None,
) -> tuple[GeneratorState, list[StepResult]]:
    rng = FixedRandom()
    results: list[StepResult] = []
    for _ in range(frames):
        if hold:
            for idx, value in hold.items():
                state = set_node_value(state, idx, value)
        result = step(state, DT, config=config, rng=rng)
        results.append(result)
        state = result.state
    return state, results


def _events(results: list[StepResult], kind: StepEventKind) -> list:
    return [e for r in results for e in r.events if e.kind is kind]


def _cues(results: list[StepResult]) -> list[Cue]:
    return [c for r in results for c in r.cues]


def test_initial_state_has_only_first_node_active_and_centered() -> None:
    state = new_generator_state()

    assert [n.active for n in state.nodes] == [True, False, False]
    assert all(n.value == 0.5 for n in state.nodes)
    assert [n.drift_phase for n in state.nodes] == [0.0, 2.1, 4.2]
    assert all(n.surge_armed and not n.surging for n in state.nodes)
    assert state.aggregate_output == 0.5
    assert state.stability_time == 0.0
    assert phase_of(state) is GeneratorPhase.RUNNING


def test_nodes_activate_exactly_at_thresholds_and_never_deactivate() -> None:
    state = new_generator_state()
    rng = SeededRng(5)
    phase_cues = 0
    was_active = [True, False, False]

    for _ in range(int(20.0 / DT)):
        result = step(state, DT, config=GeneratorPowerConfig(), rng=rng)
        state = result.state
        phase_cues += result.cues.count(Cue.PHASE)

        assert state.nodes[1].active is (state.elapsed >= 6.0)
        assert state.nodes[2].active is (state.elapsed >= 14.0)
        for idx, node in enumerate(state.nodes):
            assert not (was_active[idx] and not node.active)
            was_active[idx] = node.active

    assert phase_cues == 2


def test_activated_node_starts_centered() -> None:
    state = new_generator_state()
    state, results = _advance(state, int(6.0 / DT))

    activations = _events(results, StepEventKind.NODE_ACTIVATED)
    assert [e.node_index for e in activations] == [1]
    assert activations[0].elapsed == pytest.approx(6.0)
    assert state.nodes[1].value == 0.5


def test_values_stay_on_rail_under_random_drag_and_drift() -> None:
    script = random.Random(1234)
    rng = SeededRng(99)
    cfg = GeneratorPowerConfig()
    state = new_generator_state(cfg)

    for _ in range(3000):
        if script.random() < 0.4:
            raw = script.choice([-5.0, 7.0, 0.0, 1.0, math.nan, math.inf, script.uniform(-1.0, 2.0)])
            state = set_node_value(state, script.randrange(3), raw)
        state = step(state, script.uniform(0.0, 0.2), config=cfg, rng=rng).state

        for node in state.nodes:
            assert 0.02 <= node.value <= 0.98
        assert 0.0 <= state.stability_time <= cfg.stability_goal_s


def test_drift_speed_ramps_linearly_then_caps() -> None:
    drift = DriftConfig()
    assert drift_speed(0.0, drift) == pytest.approx(0.06)
    assert drift_speed(20.0, drift) == pytest.approx(0.155)
    assert drift_speed(40.0, drift) == pytest.approx(0.25)
    assert drift_speed(400.0, drift) == pytest.approx(0.25)


def test_drift_profiles_grow_noisier_and_stay_bounded() -> None:
    noises = [p.noise for p in DRIFT_PROFILES]
    assert noises == sorted(noises)
    assert len(set(noises)) == len(noises)

    for profile in DRIFT_PROFILES:
        bound = sum(abs(amp) for _, _, amp in profile.waves) + profile.noise / 2.0
        for k in range(200):
            phase = k * 0.1
            assert abs(profile.signal(phase, 0.0)) <= bound + 1e-9
            assert abs(profile.signal(phase, 1.0)) <= bound + 1e-9


def test_drift_phase_advances_per_node_rate() -> None:
    state = new_generator_state(CALM_ALL_ACTIVE)
    before = [n.drift_phase for n in state.nodes]

    state, _ = _advance(state, 1, config=CALM_ALL_ACTIVE)

    for i, node in enumerate(state.nodes):
        assert node.drift_phase == pytest.approx(before[i] + DT * (0.5 + i * 0.15))


def test_aggregate_is_mean_of_active_nodes_only() -> None:
    nodes = (
        PowerNode(index=0, value=0.2, active=True),
        PowerNode(index=1, value=0.6, active=True),
        PowerNode(index=2, value=0.98, active=False),
    )
    assert aggregate_output(nodes) == pytest.approx(0.4)

    idle = tuple(PowerNode(index=i, value=0.9, active=False) for i in range(3))
    assert aggregate_output(idle) == 0.5


def test_zone_classification_boundaries() -> None:
    bands = ZoneBands()
    assert classify_zone(0.10, bands) is Zone.UNDERPOWER
    assert classify_zone(0.25, bands) is Zone.LOW_WARN
    assert classify_zone(0.35, bands) is Zone.SAFE
    assert classify_zone(0.65, bands) is Zone.SAFE
    assert classify_zone(0.70, bands) is Zone.HIGH_WARN
    assert classify_zone(0.75, bands) is Zone.OVERLOAD


def test_no_stability_before_grace_then_accumulates_from_grace() -> None:
    state = new_generator_state(CALM)
    grace_frames = int(4.0 / DT)

    state, _ = _advance(state, grace_frames - 1)
    assert state.elapsed < 4.0
    assert state.stability_time == 0.0

    state, _ = _advance(state, 1)
    assert state.elapsed == 4.0
    assert state.stability_time == DT


def test_steady_safe_play_completes_exactly_once_with_milestones() -> None:
    state = new_generator_state(CALM)
    state, results = _advance(state, int(30.0 / DT))

    assert state.completed
    assert state.stability_time == pytest.approx(20.0)
    assert phase_of(state) is GeneratorPhase.COMPLETED

    completed = _events(results, StepEventKind.COMPLETED)
    assert len(completed) == 1
    assert completed[0].elapsed == pytest.approx(4.0 + 20.0 - DT)

    milestones = _events(results, StepEventKind.MILESTONE)
    assert [m.fraction for m in milestones] == [0.25, 0.50, 0.75]
    assert _cues(results).count(Cue.HIT) == 3
    assert Cue.MISS not in _cues(results)


def test_completed_state_is_absorbing() -> None:
    state = new_generator_state(CALM)
    state, _ = _advance(state, int(30.0 / DT))
    assert state.completed

    after = step(state, DT, config=CALM, rng=FixedRandom())
    assert after.state is state
    assert after.events == ()
    assert set_node_value(state, 0, 0.9) is state


def test_large_frame_dt_is_clamped() -> None:
    state = new_generator_state()
    result = step(state, 5.0, config=GeneratorPowerConfig(), rng=FixedRandom())
    assert result.state.elapsed == pytest.approx(0.05)

    result = step(state, -1.0, config=GeneratorPowerConfig(), rng=FixedRandom())
    assert result.state.elapsed == 0.0


def test_drag_below_threshold_triggers_one_surge_until_rearmed() -> None:
    state = new_generator_state(CALM)

    state = set_node_value(state, 0, 0.1)
    state, results = _advance(state, 1)
    assert state.nodes[0].surging
    assert not state.nodes[0].surge_armed
    assert state.surges == 1
    assert _cues(results) == [Cue.MISS]

    # Held low for longer than the surge itself: no second surge without re-arming.
    state, results = _advance(state, int(2.0 / DT), hold={0: 0.1})
    assert state.surges == 1
    assert not state.nodes[0].surging
    assert _events(results, StepEventKind.SURGE_STARTED) == []

    # Just under the re-arm line still does not re-arm.
    state, _ = _advance(state, 1, hold={0: 0.39})
    state, _ = _advance(state, 1, hold={0: 0.1})
    assert state.surges == 1

    state, _ = _advance(state, 1, hold={0: 0.45})
    assert state.nodes[0].surge_armed

    state, _ = _advance(state, 1, hold={0: 0.1})
    assert state.surges == 2
    assert state.nodes[0].surging


def test_surge_lasts_exactly_its_duration_and_pushes_upward() -> None:
    state = new_generator_state(CALM)
    state = set_node_value(state, 0, 0.1)
    state, results = _advance(state, int(2.0 / DT))

    started = _events(results, StepEventKind.SURGE_STARTED)
    ended = _events(results, StepEventKind.SURGE_ENDED)
    assert len(started) == 1
    assert len(ended) == 1
    assert ended[0].elapsed - started[0].elapsed == pytest.approx(1.5, abs=DT)

    # 0.3 per second of push for the whole surge, no drift in the calm config.
    assert state.nodes[0].value == pytest.approx(0.1 + 1.5 * 0.3)


def test_surge_penalty_takes_ten_percent_of_stability_once() -> None:
    state = new_generator_state(CALM)
    state, _ = _advance(state, int(8.0 / DT))
    before = state.stability_time
    assert before > 0.0

    state = set_node_value(state, 0, 0.1)
    state, results = _advance(state, 1)

    assert state.surges == 1
    assert state.stability_time == pytest.approx(before * 0.9)
    assert _events(results, StepEventKind.FAILURE) == []


def test_overload_enters_cooldown_then_recovers_centered() -> None:
    state = new_generator_state(CALM)
    state, _ = _advance(state, int(5.0 / DT))
    before = state.stability_time

    state = set_node_value(state, 0, 0.9)
    state, results = _advance(state, 1)

    assert state.cooldown.active
    assert state.cooldown.remaining == pytest.approx(3.0)
    assert state.failures == 1
    assert state.stability_time == pytest.approx(before * 0.9)
    assert _cues(results) == [Cue.MISS]
    assert phase_of(state) is GeneratorPhase.COOLDOWN

    frozen_value = state.nodes[0].value
    frozen_phase = state.nodes[0].drift_phase
    assert set_node_value(state, 0, 0.5) is state

    state, results = _advance(state, int(3.0 / DT) - 1)
    assert state.cooldown.active
    assert state.nodes[0].value == frozen_value
    assert state.nodes[0].drift_phase == frozen_phase
    assert state.stability_time == pytest.approx(before * 0.9)

    state, results = _advance(state, 1)
    assert not state.cooldown.active
    assert len(_events(results, StepEventKind.RECOVERY)) == 1
    for node in state.active_nodes():
        assert node.value == 0.5
        assert node.surge_armed and not node.surging
    assert state.recovery_until == pytest.approx(state.elapsed + 3.0)
    assert phase_of(state) is GeneratorPhase.RECOVERY


def _recovered_state() -> GeneratorState:
    state = new_generator_state(CALM)
    state, _ = _advance(state, int(5.0 / DT))
    state = set_node_value(state, 0, 0.9)
    state, _ = _advance(state, int(3.0 / DT) + 1)
    assert not state.cooldown.active
    assert state.in_recovery()
    return state


def test_recovery_window_suppresses_failure_even_when_forced_into_overload() -> None:
    state = _recovered_state()

    state, results = _advance(state, int(3.0 / DT) - 2, hold={0: 0.95})
    assert not state.cooldown.active
    assert state.failures == 1
    assert _events(results, StepEventKind.FAILURE) == []

    state, results = _advance(state, 1, hold={0: 0.95})
    assert state.cooldown.active
    assert state.failures == 2


def test_recovery_window_suppresses_surges() -> None:
    state = _recovered_state()

    state, results = _advance(state, int(3.0 / DT) - 2, hold={0: 0.1})
    assert state.surges == 0
    assert _events(results, StepEventKind.SURGE_STARTED) == []

    state, _ = _advance(state, 1, hold={0: 0.1})
    assert state.surges == 1


def test_single_node_in_red_fails_even_with_safe_aggregate() -> None:
    state = new_generator_state(CALM_ALL_ACTIVE)
    state, _ = _advance(state, int(4.5 / DT), config=CALM_ALL_ACTIVE)
    before = state.stability_time

    state = set_node_value(state, 0, 0.8)
    state = set_node_value(state, 1, 0.45)
    state = set_node_value(state, 2, 0.45)
    state, _ = _advance(state, 1, config=CALM_ALL_ACTIVE)

    assert 0.35 <= state.aggregate_output <= 0.65
    assert state.cooldown.active
    assert state.stability_time == pytest.approx(before * 0.9)


def test_unbalanced_node_blocks_accumulation_without_failing() -> None:
    state = new_generator_state(CALM_ALL_ACTIVE)
    state, _ = _advance(state, int(4.5 / DT), config=CALM_ALL_ACTIVE)
    before = state.stability_time

    # Aggregate stays safe but node 0 sits below the balanced range.
    state, _ = _advance(state, 8, config=CALM_ALL_ACTIVE, hold={0: 0.2, 1: 0.65, 2: 0.65})

    assert 0.35 <= state.aggregate_output <= 0.65
    assert state.nodes[0].value < 0.25
    assert state.stability_time == pytest.approx(before * 0.9)  # one surge from node 0
    assert not state.cooldown.active


def test_same_seed_gives_identical_runs() -> None:
    def run(seed: int) -> GeneratorState:
        cfg = GeneratorPowerConfig()
        rng = SeededRng(seed)
        state = new_generator_state(cfg)
        for _ in range(1500):
            state = step(state, DT, config=cfg, rng=rng).state
        return state

    assert run(77) == run(77)


@pytest.mark.parametrize(
    "overrides",
    [
        {"penalty_factor": 0.0},
        {"penalty_factor": 1.5},
        {"cooldown_s": 0.0},
        {"stability_goal_s": -1.0},
        {"surge_duration_s": 0.0},
        {"node_activation_s": (1.0, 6.0, 14.0)},
        {"node_activation_s": (0.0, 14.0, 6.0)},
        {"zones": ZoneBands(safe_min=0.7, safe_max=0.6)},
        {"value_floor": 0.5, "value_ceiling": 0.4},
        {"milestones": (0.5, 1.0)},
    ],
)
def test_invalid_config_is_rejected(overrides: dict) -> None:
    with pytest.raises(ValueError):
        validate_config(GeneratorPowerConfig(**overrides))
