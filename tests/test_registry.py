from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from cloud_vault.services.registry import PeriodicSweeper, TTLRegistry


@dataclass
class _Job:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_active: bool = False
    owner: str = "alice"


def test_sweep_evicts_only_expired_finished_entries() -> None:
    registry: TTLRegistry[_Job] = TTLRegistry("jobs", timedelta(hours=1))
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    registry.register("old-done", _Job(started_at=old))
    registry.register("old-running", _Job(started_at=old, is_active=True))
    registry.register("fresh", _Job())

    removed = registry.sweep()

    assert removed == ["old-done"]
    assert "old-running" in registry
    assert "fresh" in registry


def test_sweep_uses_supplied_clock() -> None:
    registry: TTLRegistry[_Job] = TTLRegistry("jobs", timedelta(minutes=30))
    registry.register("job", _Job())
    assert registry.sweep() == []
    assert registry.sweep(datetime.now(timezone.utc) + timedelta(hours=1)) == ["job"]
    assert len(registry) == 0


def test_register_if_checks_and_inserts_atomically() -> None:
    registry: TTLRegistry[_Job] = TTLRegistry("jobs", timedelta(hours=1))

    def _admit(jobs: list[_Job]) -> bool:
        return sum(1 for job in jobs if job.is_active) < 3

    outcomes: list[bool] = []
    lock = threading.Lock()

    def _attempt(index: int) -> None:
        accepted = registry.register_if(f"job-{index}", _Job(is_active=True), _admit)
        with lock:
            outcomes.append(accepted)

    threads = [threading.Thread(target=_attempt, args=(index,)) for index in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(True) == 3
    assert len(registry) == 3


def test_update_mutates_under_lock() -> None:
    registry: TTLRegistry[_Job] = TTLRegistry("jobs", timedelta(hours=1))
    registry.register("job", _Job(is_active=True))
    registry.update("job", lambda job: setattr(job, "is_active", False))
    assert registry.get("job").is_active is False
    assert registry.update("missing", lambda job: None) is None


def test_periodic_sweeper_runs_until_stopped() -> None:
    calls = threading.Event()
    sweeper = PeriodicSweeper("test", calls.set, interval_seconds=0.01)
    sweeper.start()
    try:
        assert calls.wait(2.0)
        assert sweeper.running
    finally:
        sweeper.stop(timeout=2.0)
    assert not sweeper.running


def test_periodic_sweeper_survives_failing_sweep() -> None:
    attempts: list[int] = []
    second_call = threading.Event()

    def _sweep() -> None:
        attempts.append(1)
        if len(attempts) >= 2:
            second_call.set()
        raise RuntimeError("boom")

    sweeper = PeriodicSweeper("flaky", _sweep, interval_seconds=0.01)
    sweeper.start()
    try:
        assert second_call.wait(2.0)
    finally:
        sweeper.stop(timeout=2.0)


def test_periodic_sweeper_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        PeriodicSweeper("bad", lambda: None, interval_seconds=0)
