"""Tests for the trailing debounce primitive."""

from __future__ import annotations

import asyncio

import pytest

from devloop.cli.dev.debounce import TrailingDebouncer

DELAY = 0.05


@pytest.mark.asyncio
async def test_burst_fires_once_after_last_trigger() -> None:
    loop = asyncio.get_running_loop()
    fired: list[float] = []

    async def callback() -> None:
        fired.append(loop.time())

    debouncer = TrailingDebouncer(DELAY, callback)
    for _ in range(4):
        debouncer.trigger()
        await asyncio.sleep(DELAY / 4)
    last_trigger = loop.time()
    debouncer.trigger()
    await debouncer.drain()

    assert len(fired) == 1
    assert fired[0] - last_trigger >= DELAY * 0.9
    assert debouncer.fire_count == 1


@pytest.mark.asyncio
async def test_cancel_drops_pending_timer() -> None:
    calls = 0

    async def callback() -> None:
        nonlocal calls
        calls += 1

    debouncer = TrailingDebouncer(DELAY, callback)
    debouncer.trigger()
    assert debouncer.pending
    debouncer.cancel()
    await asyncio.sleep(DELAY * 2)
    assert calls == 0
    assert not debouncer.busy


@pytest.mark.asyncio
async def test_trigger_while_running_does_not_interrupt() -> None:
    started = asyncio.Event()
    finished: list[int] = []

    async def callback() -> None:
        started.set()
        await asyncio.sleep(DELAY * 2)
        finished.append(1)

    debouncer = TrailingDebouncer(DELAY, callback)
    debouncer.trigger()
    await started.wait()
    debouncer.trigger()
    await debouncer.drain()

    assert finished == [1, 1]
    assert debouncer.fire_count == 2


@pytest.mark.asyncio
async def test_callback_error_does_not_break_debouncer() -> None:
    calls = 0

    async def callback() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")

    debouncer = TrailingDebouncer(DELAY, callback)
    debouncer.trigger()
    await debouncer.drain()
    debouncer.trigger()
    await debouncer.drain()
    assert calls == 2


@pytest.mark.asyncio
async def test_aclose_cancels_running_callback() -> None:
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def callback() -> None:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    debouncer = TrailingDebouncer(0, callback)
    debouncer.trigger()
    await started.wait()
    await debouncer.aclose()
    assert cancelled.is_set()
    assert not debouncer.busy
