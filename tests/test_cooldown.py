from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fleet_scheduler.cooldown import CooldownCoordinator, classify_error


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.mark.parametrize(
    "message",
    [
        "No SDK available",
        "Cooling down: codex (30s)",
        "HTTP 429 Too Many Requests",
        "Gateway Timeout",
        "upstream connect error",
        "RATE_LIMIT exceeded",
        "No backend available: 'gemini' is not configured",
    ],
)
def test_retryable_errors_trigger_failover(message: str) -> None:
    assert classify_error(message).retryable_via_failover is True


@pytest.mark.parametrize("message", ["", None, "validation failed: missing field"])
def test_other_errors_do_not_trigger_failover(message) -> None:
    classification = classify_error(message)
    assert classification.retryable_via_failover is False
    assert classification.cool_down is False
    assert classification.matched_rule == "non_retryable"


def test_timeouts_cool_down_without_failover() -> None:
    classification = classify_error("codex timed out after 300s")
    assert classification.matched_rule == "timeout"
    assert classification.cool_down is True
    assert classification.retryable_via_failover is False


def test_first_matching_rule_wins() -> None:
    classification = classify_error("504 Gateway Timeout")
    assert classification.matched_rule == "gateway"
    assert classification.matched_pattern == "gateway timeout"


def test_cooldown_window_expires_naturally() -> None:
    clock = Clock()
    coordinator = CooldownCoordinator(clock=clock)

    until = coordinator.cool_down("codex", reason="429")
    assert until == clock.now + timedelta(seconds=120)
    assert coordinator.is_on_cooldown("codex")
    assert coordinator.cooldown_error("codex") == "Cooling down: codex (120s)"

    clock.advance(119.2)
    assert coordinator.cooldown_error("codex") == "Cooling down: codex (1s)"

    clock.advance(0.8)
    assert not coordinator.is_on_cooldown("codex")
    assert coordinator.snapshot() == {}


def test_set_cooldown_and_snapshot() -> None:
    clock = Clock()
    coordinator = CooldownCoordinator(clock=clock)
    coordinator.set_cooldown("copilot", clock.now + timedelta(seconds=45), reason="502")

    snapshot = coordinator.snapshot()
    assert snapshot["copilot"]["remaining_seconds"] == 45
    assert snapshot["copilot"]["reason"] == "502"

    coordinator.clear("copilot")
    assert not coordinator.is_on_cooldown("copilot")


def test_next_backend_rotates_and_skips_cooling() -> None:
    clock = Clock()
    coordinator = CooldownCoordinator(clock=clock)
    chain = ("codex", "copilot", "claude")

    assert coordinator.next_backend("codex", chain) == "copilot"
    assert coordinator.next_backend("claude", chain) == "codex"

    coordinator.cool_down("copilot")
    assert coordinator.next_backend("codex", chain) == "claude"
    assert coordinator.next_backend("codex", chain, skip_cooling=False) == "copilot"

    coordinator.cool_down("claude")
    assert coordinator.next_backend("codex", chain) is None
    assert coordinator.next_backend("codex", ("codex",)) is None
