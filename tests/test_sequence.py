import asyncio

from invoice_service.sequence import OrderSequence


async def allocate(async_session, sequence: OrderSequence) -> int:
    async with async_session() as session:
        async with session.begin():
            return await sequence.next_order_id(session)


async def test_fresh_counter_starts_at_thirty(async_session, store):
    sequence = OrderSequence()
    assert await allocate(async_session, sequence) == 30
    assert await allocate(async_session, sequence) == 31
    assert await allocate(async_session, sequence) == 32
    assert await store.sequence_value() == 32


async def test_legacy_low_counter_is_lifted_to_floor(async_session, store):
    await store.execute("INSERT INTO order_sequences (name, value) VALUES ('order-id', 4)")
    sequence = OrderSequence()
    assert await allocate(async_session, sequence) == 30
    assert await allocate(async_session, sequence) == 31


async def test_existing_high_counter_keeps_counting(async_session, store):
    await store.execute("INSERT INTO order_sequences (name, value) VALUES ('order-id', 120)")
    assert await allocate(async_session, OrderSequence()) == 121


async def test_counters_are_independent(async_session):
    orders = OrderSequence()
    returns = OrderSequence(name="return-id", seed=999, floor=1)
    assert await allocate(async_session, orders) == 30
    assert await allocate(async_session, returns) == 1000
    assert await allocate(async_session, orders) == 31


async def test_rolled_back_allocation_is_not_kept(async_session, store):
    sequence = OrderSequence()
    await allocate(async_session, sequence)
    async with async_session() as session:
        await session.begin()
        assert await sequence.next_order_id(session) == 31
        await session.rollback()
    assert await allocate(async_session, sequence) == 31


async def test_concurrent_allocations_never_repeat(async_session):
    sequence = OrderSequence()
    values = await asyncio.gather(*(allocate(async_session, sequence) for _ in range(10)))
    assert sorted(values) == list(range(30, 40))
