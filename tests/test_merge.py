"""Tests for merging several async iterables."""

import asyncio

import pytest

from kitchen_jobs.events import merge_async_iterables


async def finite(prefix, count, delay=0.0, closed=None):
    try:
        for i in range(count):
            await asyncio.sleep(delay)
            yield f"{prefix}{i}"
    finally:
        if closed is not None:
            closed.append(prefix)


async def endless(prefix, closed):
    try:
        i = 0
        while True:
            await asyncio.sleep(0.005)
            yield f"{prefix}{i}"
            i += 1
    finally:
        closed.append(prefix)


@pytest.mark.asyncio
async def test_every_value_is_yielded_once():
    sources = [finite("a", 3, 0.001), finite("b", 5), finite("c", 2, 0.003)]

    received = [value async for value in merge_async_iterables(sources)]

    assert sorted(received) == sorted(["a0", "a1", "a2", "b0", "b1", "b2", "b3", "b4", "c0", "c1"])


@pytest.mark.asyncio
async def test_order_within_a_source_is_preserved():
    sources = [finite("a", 4, 0.002), finite("b", 4, 0.001)]

    received = [value async for value in merge_async_iterables(sources)]

    assert [v for v in received if v.startswith("a")] == ["a0", "a1", "a2", "a3"]
    assert [v for v in received if v.startswith("b")] == ["b0", "b1", "b2", "b3"]


@pytest.mark.asyncio
async def test_empty_input_ends_immediately():
    assert [value async for value in merge_async_iterables([])] == []


@pytest.mark.asyncio
async def test_cancel_stops_and_closes_every_source():
    """Nach dem Abbruch laufen die finally-Blöcke aller Quellen."""
    cancel = asyncio.Event()
    closed = []
    received = []

    async for value in merge_async_iterables([endless("a", closed), endless("b", closed)], cancel):
        received.append(value)
        if len(received) == 4:
            cancel.set()

    assert len(received) == 4
    assert sorted(closed) == ["a", "b"]


@pytest.mark.asyncio
async def test_early_break_closes_sources():
    closed = []
    stream = merge_async_iterables([endless("a", closed), endless("b", closed)])

    async for _ in stream:
        break
    await stream.aclose()

    assert sorted(closed) == ["a", "b"]


@pytest.mark.asyncio
async def test_source_error_propagates_after_cleanup():
    closed = []

    async def broken():
        yield "x0"
        raise RuntimeError("source failed")

    stream = merge_async_iterables([broken(), endless("a", closed)])
    with pytest.raises(RuntimeError, match="source failed"):
        async for _ in stream:
            pass

    assert closed == ["a"]
