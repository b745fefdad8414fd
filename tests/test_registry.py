from __future__ import annotations

import asyncio
import signal

import pytest

from relayd.worker import ActiveRunRegistry, WorkerBusyError


class StubProcess:
    def __init__(self, *, gone: bool = False) -> None:
        self.signals: list[int] = []
        self._gone = gone

    def send_signal(self, sig: int) -> None:
        if self._gone:
            raise ProcessLookupError
        self.signals.append(sig)


def test_register_rejects_second_run_on_channel() -> None:
    registry = ActiveRunRegistry()
    registry.register("chat", StubProcess())

    with pytest.raises(WorkerBusyError):
        registry.register("chat", StubProcess())

    registry.register("other", StubProcess())
    assert sorted(registry.channels()) == ["chat", "other"]


def test_abort_signals_once() -> None:
    registry = ActiveRunRegistry()
    process = StubProcess()
    run = registry.register("chat", process)

    assert registry.abort("chat") is True
    assert registry.abort("chat") is False
    assert run.aborted is True
    assert process.signals == [signal.SIGINT]


def test_abort_signals_whole_process_group(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[tuple[int, int]] = []
    monkeypatch.setattr("relayd.worker.registry.os.killpg", lambda pgid, sig: sent.append((pgid, sig)))
    registry = ActiveRunRegistry()
    process = StubProcess()
    registry.register("chat", process, process_group=4321)

    assert registry.abort("chat") is True
    assert sent == [(4321, signal.SIGINT)]
    assert process.signals == []


def test_abort_tolerates_exited_process() -> None:
    registry = ActiveRunRegistry()
    run = registry.register("chat", StubProcess(gone=True))

    assert registry.abort("chat") is True
    assert run.aborted is True


def test_pending_abort_applies_at_registration() -> None:
    registry = ActiveRunRegistry()

    assert registry.abort("chat") is True
    assert registry.abort("chat") is False
    process = StubProcess()
    run = registry.register("chat", process)

    assert run.aborted is True
    assert process.signals == [signal.SIGINT]
    assert registry.consume_pending_abort("chat") is False


def test_clear_pending_abort() -> None:
    registry = ActiveRunRegistry()
    registry.abort("chat")
    registry.clear_pending_abort("chat")

    run = registry.register("chat", StubProcess())

    assert run.aborted is False


def test_release_wakes_waiters() -> None:
    registry = ActiveRunRegistry()

    async def scenario() -> tuple[bool, bool]:
        run = registry.register("chat", StubProcess())
        waiter = asyncio.create_task(registry.wait_idle("chat", timeout=5))
        await asyncio.sleep(0)
        registry.release("chat", run)
        idle = await waiter
        idle_after = await registry.wait_idle("chat", timeout=0.01)
        return idle, idle_after

    idle, after = asyncio.run(scenario())

    assert idle is True
    assert after is True
    assert "chat" not in registry


def test_wait_idle_times_out_while_running() -> None:
    registry = ActiveRunRegistry()

    async def scenario() -> bool:
        registry.register("chat", StubProcess())
        return await registry.wait_idle("chat", timeout=0.05)

    assert asyncio.run(scenario()) is False
