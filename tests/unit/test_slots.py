"""
Slot pool tests: bounded concurrency, FIFO admission, lease reclaim
"""

import asyncio

import pytest

from ingestion.fetcher.slots import SlotPool, TicketState


def test_pool_rejects_zero_size():
    with pytest.raises(ValueError):
        SlotPool(0)


@pytest.mark.asyncio
async def test_acquire_within_capacity_is_immediate():
    pool = SlotPool(2)
    first = await pool.acquire(pool.new_ticket("a"))
    second = await pool.acquire(pool.new_ticket("b"))

    assert pool.in_use == 2
    assert first.ticket.state is TicketState.ACTIVE
    pool.release(first)
    pool.release(second)
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_waiters_are_admitted_in_arrival_order():
    pool = SlotPool(1, reclaim_interval=0.05)
    holder = await pool.acquire(pool.new_ticket("holder"))
    admitted = []

    async def worker(name):
        async with pool.slot(pool.new_ticket(name)):
            admitted.append(name)
            await asyncio.sleep(0)

    tasks = [asyncio.create_task(worker(name)) for name in ("a", "b", "c")]
    await asyncio.sleep(0.01)
    assert pool.waiting == 3

    pool.release(holder)
    await asyncio.gather(*tasks)

    assert admitted == ["a", "b", "c"]
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_newcomer_cannot_overtake_a_waiter():
    pool = SlotPool(1, reclaim_interval=0.05)
    holder = await pool.acquire(pool.new_ticket("holder"))
    order = []

    async def worker(name):
        lease = await pool.acquire(pool.new_ticket(name))
        order.append(name)
        pool.release(lease)

    waiter = asyncio.create_task(worker("waiter"))
    await asyncio.sleep(0.01)
    pool.release(holder)
    newcomer = asyncio.create_task(worker("newcomer"))
    await asyncio.gather(waiter, newcomer)

    assert order == ["waiter", "newcomer"]


@pytest.mark.asyncio
async def test_lease_of_finished_owner_is_reclaimed():
    pool = SlotPool(1, reclaim_interval=0.02)

    async def leak():
        await pool.acquire(pool.new_ticket("leaked"))

    await asyncio.create_task(leak())
    assert pool.in_use == 1

    lease = await asyncio.wait_for(pool.acquire(pool.new_ticket("next")), timeout=1)
    assert lease.ticket.resource_id == "next"
    assert pool.in_use == 1


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimed():
    now = [0.0]
    pool = SlotPool(1, lease_timeout=10, clock=lambda: now[0])
    await pool.acquire(pool.new_ticket("slow"))

    now[0] = 11.0
    assert pool.reclaim_stale() == 1
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_hold_a_slot():
    pool = SlotPool(1, reclaim_interval=0.05)
    holder = await pool.acquire(pool.new_ticket("holder"))

    waiter = asyncio.create_task(pool.acquire(pool.new_ticket("cancelled")))
    await asyncio.sleep(0.01)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    pool.release(holder)
    assert pool.in_use == 0
    lease = await pool.acquire(pool.new_ticket("after"))
    assert lease.ticket.resource_id == "after"
