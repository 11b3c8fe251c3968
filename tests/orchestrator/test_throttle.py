"""Tests for the adaptive concurrency controller.

Covers:
- ceiling normalisation and clamping to the hard maximum
- one-step-per-poll recovery of the throttle level
- backoff and cooldown after a failure
- storage-pressure caps at the low and high water marks
- the options hint
"""

from __future__ import annotations

from docharvest.core.config.models import MIB, OrchestratorConfig
from docharvest.core.orchestrator.throttle import ConcurrencyController, normalize_concurrency
from fakes import FakeClock


def make_controller(stored: list[int] | None = None, **config) -> tuple[ConcurrencyController, FakeClock]:
    clock = FakeClock()
    size = stored if stored is not None else [0]
    controller = ConcurrencyController(
        OrchestratorConfig(**config),
        stored_bytes=lambda: size[0],
        clock=clock,
    )
    return controller, clock


class TestNormalizeConcurrency:
    def test_clamps_to_range(self) -> None:
        assert normalize_concurrency(0, 3) == 1
        assert normalize_concurrency(-5, 3) == 1
        assert normalize_concurrency(2, 3) == 2
        assert normalize_concurrency(10, 3) == 3

    def test_rounds_numeric_strings(self) -> None:
        assert normalize_concurrency("2", 3) == 2
        assert normalize_concurrency(2.6, 3) == 3

    def test_garbage_falls_back_to_one(self) -> None:
        assert normalize_concurrency(None, 3) == 1
        assert normalize_concurrency("many", 3) == 1
        assert normalize_concurrency(float("nan"), 3) == 1
        assert normalize_concurrency(float("inf"), 3) == 1


class TestCeiling:
    def test_default_ceiling_is_one(self) -> None:
        controller, _ = make_controller()
        assert controller.configured_ceiling == 1
        assert controller.effective_concurrency() == 1

    def test_set_ceiling_clamps_to_hard_max(self) -> None:
        controller, _ = make_controller()
        assert controller.set_ceiling(99) == 3
        assert controller.configured_ceiling == 3

    def test_lowering_ceiling_lowers_throttle_level(self) -> None:
        controller, _ = make_controller()
        controller.set_ceiling(3)
        for _ in range(5):
            controller.effective_concurrency()
        assert controller.throttle_level == 3

        controller.set_ceiling(1)
        assert controller.throttle_level == 1
        assert controller.effective_concurrency() == 1

    def test_options_hint(self) -> None:
        controller, _ = make_controller()
        assert controller.apply_options_hint({"batch_concurrency": 2}) is True
        assert controller.configured_ceiling == 2

    def test_missing_hint_leaves_ceiling_alone(self) -> None:
        controller, _ = make_controller()
        controller.set_ceiling(3)
        assert controller.apply_options_hint({"image_mode": "local"}) is False
        assert controller.apply_options_hint(None) is False
        assert controller.configured_ceiling == 3


class TestRecovery:
    def test_throttle_climbs_one_step_per_poll(self) -> None:
        controller, _ = make_controller()
        controller.set_ceiling(3)
        assert controller.throttle_level == 1

        assert controller.effective_concurrency() == 2
        assert controller.effective_concurrency() == 3
        assert controller.effective_concurrency() == 3

    def test_failure_backs_off_and_holds_during_cooldown(self) -> None:
        controller, clock = make_controller()
        controller.set_ceiling(3)
        controller.effective_concurrency()
        before = controller.effective_concurrency()
        assert before == 3

        controller.record_outcome(False)
        assert controller.effective_concurrency() == 2
        assert controller.effective_concurrency() <= before

        clock.advance(44)
        assert controller.effective_concurrency() == 2

        clock.advance(2)
        assert controller.effective_concurrency() == 3

    def test_success_does_not_change_state(self) -> None:
        controller, _ = make_controller()
        controller.record_outcome(True)
        assert controller.throttle_level == 1
        assert controller.cooldown_until == 0.0

    def test_throttle_floor_is_one(self) -> None:
        controller, _ = make_controller()
        controller.record_outcome(False)
        controller.record_outcome(False)
        assert controller.throttle_level == 1
        assert controller.effective_concurrency() == 1


class TestStoragePressure:
    def test_high_water_forces_one(self) -> None:
        stored = [700 * MIB]
        controller, _ = make_controller(stored)
        controller.set_ceiling(3)
        for _ in range(3):
            assert controller.effective_concurrency() == 1

    def test_low_water_caps_at_two(self) -> None:
        stored = [400 * MIB]
        controller, _ = make_controller(stored)
        controller.set_ceiling(3)
        controller.effective_concurrency()
        assert controller.effective_concurrency() == 2
        assert controller.effective_concurrency() == 2

    def test_pressure_is_read_on_every_call(self) -> None:
        stored = [0]
        controller, _ = make_controller(stored)
        controller.set_ceiling(3)
        controller.effective_concurrency()
        assert controller.effective_concurrency() == 3

        stored[0] = 651 * MIB
        assert controller.effective_concurrency() == 1

        stored[0] = 0
        assert controller.effective_concurrency() == 3

    def test_stats(self) -> None:
        controller, clock = make_controller([123])
        controller.record_outcome(False)
        clock.advance(5)
        stats = controller.stats()
        assert stats["stored_bytes"] == 123
        assert stats["cooldown_remaining"] == 40
        assert stats["throttle_level"] == 1
