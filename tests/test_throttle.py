import asyncio
from datetime import date, timedelta

from core.database import NOTIFICATION_LOG
from core.throttle import OVERDUE_SUMMARY, WATER_REMINDER, ThrottleGate
from tests.conftest import utc


async def test_interval_throttle(store):
    gate = ThrottleGate(store)
    interval = timedelta(hours=4)
    start = utc(2024, 5, 1, 10, 0)

    assert await gate.should_send("u1", OVERDUE_SUMMARY, start, interval)
    await gate.record_sent("u1", OVERDUE_SUMMARY, start)

    assert not await gate.should_send("u1", OVERDUE_SUMMARY, start + timedelta(hours=3), interval)
    assert await gate.should_send("u1", OVERDUE_SUMMARY, start + timedelta(hours=4), interval)
    # Other users are unaffected
    assert await gate.should_send("u2", OVERDUE_SUMMARY, start, interval)


async def test_interval_log_keeps_one_row_per_user(store):
    gate = ThrottleGate(store)
    await gate.record_sent("u1", OVERDUE_SUMMARY, utc(2024, 5, 1, 10, 0))
    await gate.record_sent("u1", OVERDUE_SUMMARY, utc(2024, 5, 1, 15, 0))

    rows = await store.find(NOTIFICATION_LOG, {"user_id": "u1"})
    assert len(rows) == 1
    assert rows[0]["sent_at"] == utc(2024, 5, 1, 15, 0)


async def test_slot_lookback(store):
    gate = ThrottleGate(store)
    lookback = timedelta(hours=2)
    sent = utc(2024, 5, 1, 14, 1)
    assert await gate.claim_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 1), sent, lookback)

    assert await gate.sent_in_slot("u1", WATER_REMINDER, "14:00", sent + timedelta(minutes=2), lookback)
    assert not await gate.sent_in_slot("u1", WATER_REMINDER, "16:00", sent + timedelta(hours=2), lookback)
    # Same slot label on the next day is outside the lookback
    assert not await gate.sent_in_slot("u1", WATER_REMINDER, "14:00", sent + timedelta(days=1), lookback)


async def test_slot_claimed_once_per_day(store):
    gate = ThrottleGate(store)
    lookback = timedelta(hours=2)
    first = utc(2024, 5, 1, 14, 1)

    assert await gate.claim_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 1), first, lookback)
    assert not await gate.claim_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 1), first + timedelta(minutes=2), lookback)
    assert await gate.claim_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 2), first + timedelta(days=1), lookback)

    rows = await store.find(NOTIFICATION_LOG, {"user_id": "u1"})
    assert sorted(row["slot_date"] for row in rows) == ["2024-05-01", "2024-05-02"]


async def test_released_slot_can_be_claimed_again(store):
    gate = ThrottleGate(store)
    lookback = timedelta(hours=2)
    now = utc(2024, 5, 1, 14, 1)
    await gate.claim_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 1), now, lookback)

    await gate.release_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 1))

    assert await gate.claim_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 1), now + timedelta(minutes=2), lookback)


async def test_concurrent_slot_claims_have_one_winner(yielding_store):
    gate = ThrottleGate(yielding_store)
    now = utc(2024, 5, 1, 14, 1)

    results = await asyncio.gather(*(
        gate.claim_slot("u1", WATER_REMINDER, "14:00", date(2024, 5, 1), now, timedelta(hours=2))
        for _ in range(5)
    ))

    assert results.count(True) == 1
