from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from copilot_gateway.runtime.persistence_tasks import DebouncedWriter, PeriodicSaver


def test_debounced_writer_coalesces_requests_into_latest_snapshot() -> None:
    state = {"version": 0}
    written: list[dict[str, int]] = []

    async def scenario() -> DebouncedWriter:
        writer = DebouncedWriter(
            name="test",
            snapshot=lambda: dict(state),
            write=written.append,
            delay_seconds=0.02,
        )
        await writer.start()
        for version in range(1, 6):
            state["version"] = version
            writer.request()
        await asyncio.sleep(0.2)
        await writer.stop()
        return writer

    writer = asyncio.run(scenario())

    assert written == [{"version": 5}]
    assert writer.writes == 1
    assert writer.dirty is False


def test_debounced_writer_flush_writes_only_when_dirty() -> None:
    written: list[str] = []
    writer = DebouncedWriter(name="test", snapshot=lambda: "doc", write=written.append)

    assert writer.flush() is False
    writer.request()
    assert writer.flush() is True
    assert writer.flush() is False
    assert written == ["doc"]


def test_debounced_writer_flush_failure_keeps_dirty() -> None:
    def failing_write(_: Any) -> None:
        raise OSError("disk full")

    writer = DebouncedWriter(name="test", snapshot=lambda: {}, write=failing_write)
    writer.request()

    with pytest.raises(OSError):
        writer.flush()
    assert writer.dirty is True


def test_debounced_writer_logs_background_failure(caplog: Any) -> None:
    def failing_write(_: Any) -> None:
        raise OSError("disk full")

    async def scenario() -> DebouncedWriter:
        writer = DebouncedWriter(name="pool", snapshot=lambda: {}, write=failing_write, delay_seconds=0.01)
        await writer.start()
        writer.request()
        await asyncio.sleep(0.1)
        await writer.stop()
        return writer

    with caplog.at_level(logging.ERROR):
        writer = asyncio.run(scenario())

    assert writer.dirty is True
    assert "state_save_failed name=pool" in caplog.text


def test_periodic_saver_invokes_save_until_stopped() -> None:
    calls: list[int] = []

    async def save() -> None:
        calls.append(1)

    async def scenario() -> None:
        saver = PeriodicSaver(name="cache", save=save, interval_seconds=0.01)
        await saver.start()
        await asyncio.sleep(0.1)
        await saver.stop()

    asyncio.run(scenario())

    assert len(calls) >= 2
