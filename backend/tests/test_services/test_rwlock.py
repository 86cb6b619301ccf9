"""Tests for ReadWriteLock."""

import asyncio

import pytest

from blockflow.services import ReadWriteLock


async def test_readers_share_the_lock():
    lock = ReadWriteLock()
    inside = 0
    peak = 0

    async def reader():
        nonlocal inside, peak
        async with lock.read():
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(*[reader() for _ in range(3)])
    assert peak == 3


async def test_writer_excludes_readers():
    lock = ReadWriteLock()
    events = []

    async def writer():
        async with lock.write():
            events.append("write start")
            await asyncio.sleep(0.01)
            events.append("write end")

    async def reader():
        await asyncio.sleep(0)
        async with lock.read():
            events.append("read")

    await asyncio.gather(writer(), reader())
    assert events == ["write start", "write end", "read"]


async def test_waiting_writer_blocks_new_readers():
    lock = ReadWriteLock()
    events = []
    first_reader_in = asyncio.Event()

    async def first_reader():
        async with lock.read():
            first_reader_in.set()
            await asyncio.sleep(0.02)
            events.append("first read done")

    async def writer():
        await first_reader_in.wait()
        async with lock.write():
            events.append("write")

    async def late_reader():
        await first_reader_in.wait()
        await asyncio.sleep(0.005)
        async with lock.read():
            events.append("late read")

    await asyncio.gather(first_reader(), writer(), late_reader())
    assert events == ["first read done", "write", "late read"]


async def test_cancelled_writer_releases_readers():
    lock = ReadWriteLock()
    events = []
    reader_in = asyncio.Event()

    async def holder():
        async with lock.read():
            reader_in.set()
            await asyncio.sleep(0.03)

    async def writer():
        async with lock.write():
            events.append("write")

    async def late_reader():
        await asyncio.sleep(0.01)
        async with lock.read():
            events.append("late read")

    holding = asyncio.create_task(holder())
    await reader_in.wait()
    writing = asyncio.create_task(writer())
    late = asyncio.create_task(late_reader())
    # Cancel once the late reader is queued behind the writer
    await asyncio.sleep(0.015)

    writing.cancel()
    with pytest.raises(asyncio.CancelledError):
        await writing
    await asyncio.wait_for(late, timeout=1)
    await holding

    assert events == ["late read"]
