from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger("uvicorn.error")


class DebouncedWriter:
    """Coalesces bursts of "state changed" signals into a single write.

    ``request()`` marks the state dirty and (re)arms the debounce timer; the
    background task writes once no new request arrived for ``delay_seconds``.
    The document is captured with ``snapshot`` on the event loop and handed to
    ``write`` in a worker thread. ``flush()`` writes immediately in the caller.
    Without a running task, requests only mark the state dirty.
    """

    def __init__(
        self,
        *,
        name: str,
        snapshot: Callable[[], Any],
        write: Callable[[Any], None],
        delay_seconds: float = 0.5,
    ) -> None:
        self._name = name
        self._snapshot = snapshot
        self._write = write
        self._delay_seconds = max(0.0, float(delay_seconds))
        self._dirty = False
        self._signal: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._writes = 0

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def writes(self) -> int:
        return self._writes

    async def start(self) -> None:
        if self._task is not None:
            return
        self._signal = asyncio.Event()
        if self._dirty:
            self._signal.set()
        self._task = asyncio.create_task(self._run(), name=f"{self._name}-writer")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._signal = None

    def request(self) -> None:
        self._dirty = True
        if self._signal is not None:
            self._signal.set()

    def flush(self) -> bool:
        if not self._dirty:
            return False
        self._dirty = False
        try:
            self._write(self._snapshot())
        except Exception:
            self._dirty = True
            raise
        self._writes += 1
        return True

    async def _run(self) -> None:
        signal = self._signal
        if signal is None:
            return
        while True:
            await signal.wait()
            signal.clear()
            # Each new request inside the window restarts the timer.
            while True:
                try:
                    await asyncio.wait_for(signal.wait(), timeout=self._delay_seconds)
                except TimeoutError:
                    break
                signal.clear()
            if not self._dirty:
                continue
            self._dirty = False
            document = self._snapshot()
            try:
                await asyncio.to_thread(self._write, document)
                self._writes += 1
            except Exception as exc:
                self._dirty = True
                logger.error("state_save_failed name=%s error=%s", self._name, exc)


class PeriodicSaver:
    def __init__(
        self,
        *,
        name: str,
        save: Callable[[], Awaitable[Any]],
        interval_seconds: float = 300.0,
    ) -> None:
        self._name = name
        self._save = save
        self._interval_seconds = max(0.01, float(interval_seconds))
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name=f"{self._name}-saver")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self._save()
            except Exception as exc:
                logger.error("periodic_save_failed name=%s error=%s", self._name, exc)
