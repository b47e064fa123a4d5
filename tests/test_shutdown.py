"""
tests/test_shutdown.py — Graceful Shutdown Coordinator
=======================================================
"""

from __future__ import annotations

import asyncio

from housecup.services.shutdown import ShutdownCoordinator


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _recorder(calls: list[str], name: str, *, delay: float = 0, error: bool = False):
    async def step():
        calls.append(name)
        if delay:
            await asyncio.sleep(delay)
        if error:
            raise RuntimeError(name)

    return step


def _coordinator(calls, exits=None, **kwargs) -> ShutdownCoordinator:
    sessions = kwargs.pop("sessions", _recorder(calls, "sessions"))
    schedulers = kwargs.pop("schedulers", _recorder(calls, "schedulers"))
    gateway = kwargs.pop("gateway", _recorder(calls, "gateway"))
    exit_calls = exits if exits is not None else []
    return ShutdownCoordinator(
        sessions, schedulers, gateway, exit_func=exit_calls.append, **kwargs,
    )


class TestShutdownOrder:
    def test_steps_run_in_order(self):
        calls: list[str] = []
        coordinator = _coordinator(calls)

        outcomes = run_async(coordinator.run())

        assert calls == ["sessions", "schedulers", "gateway"]
        assert set(outcomes.values()) == {"ok"}

    def test_failed_step_does_not_block_the_rest(self):
        calls: list[str] = []
        coordinator = _coordinator(calls, sessions=_recorder(calls, "sessions", error=True))

        outcomes = run_async(coordinator.run())

        assert calls == ["sessions", "schedulers", "gateway"]
        assert outcomes["persist voice sessions"] == "error"
        assert outcomes["close gateway"] == "ok"

    def test_hanging_step_times_out(self):
        calls: list[str] = []
        coordinator = _coordinator(
            calls,
            schedulers=_recorder(calls, "schedulers", delay=5),
            scheduler_timeout=0.05,
        )

        outcomes = run_async(coordinator.run())

        assert calls == ["sessions", "schedulers", "gateway"]
        assert outcomes["stop schedulers"] == "timeout"

    def test_runs_once(self):
        calls: list[str] = []
        coordinator = _coordinator(calls)

        run_async(coordinator.run())
        assert run_async(coordinator.run()) == {}
        assert calls == ["sessions", "schedulers", "gateway"]
        assert coordinator.started


class TestWatchdog:
    def test_hard_timeout_forces_exit(self):
        calls: list[str] = []
        exits: list[int] = []
        coordinator = _coordinator(
            calls,
            exits,
            sessions=_recorder(calls, "sessions", delay=0.3),
            hard_timeout=0.05,
        )

        run_async(coordinator.run())

        assert exits == [1]

    def test_clean_drain_cancels_watchdog(self):
        calls: list[str] = []
        exits: list[int] = []
        coordinator = _coordinator(calls, exits, hard_timeout=0.1)

        async def drain_then_wait():
            await coordinator.run()
            await asyncio.sleep(0.2)

        run_async(drain_then_wait())

        assert exits == []
