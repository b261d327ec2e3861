"""
Exclusivity lock: fail-fast contention and deterministic stale reclaim
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from core.exceptions import LockContentionError
from ingestion.locking import ExclusivityLock
from models.sync_lock import SyncLock


def make_lock(session_factory, hostname="host-a", pid=4242, **kwargs):
    kwargs.setdefault("heartbeat_interval", 3600)
    kwargs.setdefault("pid_alive", lambda pid: True)
    return ExclusivityLock(session_factory, "notes-sync", hostname=hostname, pid=pid, **kwargs)


async def holder(session_factory):
    async with session_factory() as session:
        return await session.get(SyncLock, "notes-sync")


@pytest.mark.asyncio
async def test_second_owner_fails_fast(session_factory):
    first = make_lock(session_factory)
    second = make_lock(session_factory, hostname="host-b", pid=99)

    await first.acquire()
    with pytest.raises(LockContentionError) as exc_info:
        await second.acquire()

    assert exc_info.value.holder["hostname"] == "host-a"
    assert exc_info.value.holder["pid"] == 4242
    assert second.held is False
    assert (await holder(session_factory)).owner_token == first.token


@pytest.mark.asyncio
async def test_reacquire_by_same_owner(session_factory):
    lock = make_lock(session_factory)
    await lock.acquire()
    await lock.acquire()
    assert lock.held is True


@pytest.mark.asyncio
async def test_stale_heartbeat_is_reclaimed(session_factory, now):
    first = make_lock(session_factory, clock=lambda: now)
    await first.acquire()

    later = now + timedelta(minutes=10)
    second = make_lock(
        session_factory,
        hostname="host-b",
        stale_after=timedelta(minutes=5),
        clock=lambda: later,
    )
    await second.acquire()

    row = await holder(session_factory)
    assert row.owner_token == second.token
    assert row.hostname == "host-b"


@pytest.mark.asyncio
async def test_dead_pid_on_same_host_is_reclaimed(session_factory):
    first = make_lock(session_factory, pid=1111)
    await first.acquire()

    second = make_lock(session_factory, pid=2222, pid_alive=lambda pid: pid != 1111)
    await second.acquire()

    assert (await holder(session_factory)).pid == 2222


@pytest.mark.asyncio
async def test_live_pid_on_other_host_is_not_reclaimed(session_factory):
    await make_lock(session_factory, pid=1111).acquire()

    other = make_lock(session_factory, hostname="host-b", pid=2222, pid_alive=lambda pid: False)
    with pytest.raises(LockContentionError):
        await other.acquire()


@pytest.mark.asyncio
async def test_release_frees_the_lock(session_factory):
    first = make_lock(session_factory)
    await first.acquire()
    await first.release()

    assert first.held is False
    assert await holder(session_factory) is None
    await make_lock(session_factory, hostname="host-b").acquire()


@pytest.mark.asyncio
async def test_hold_releases_on_error(session_factory):
    lock = make_lock(session_factory)

    with pytest.raises(RuntimeError):
        async with lock.hold():
            assert lock.held is True
            raise RuntimeError("boom")

    assert lock.held is False
    assert await holder(session_factory) is None


@pytest.mark.asyncio
async def test_heartbeat_detects_takeover(session_factory, now):
    first = make_lock(session_factory, clock=lambda: now)
    await first.acquire()
    assert await first.heartbeat() is True

    later = now + timedelta(hours=1)
    await make_lock(session_factory, hostname="host-b", clock=lambda: later).acquire()

    assert await first.heartbeat() is False
    assert first.lost is True

    async with session_factory() as session:
        rows = (await session.execute(select(SyncLock))).scalars().all()
    assert [r.hostname for r in rows] == ["host-b"]
