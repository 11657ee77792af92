"""
Tests for slot blocking by external calendar events.

Coverage:
- Blocking available slots, flagging conflicts on booked ones
- Idempotent re-application
- Unblocking and hand-over to another active event
- Non-blocking and past events
- Materialization under an existing event
- Regeneration repair pass and stats
"""

import uuid

from conftest import MONDAY, NOW, at, window_slots
from medbook.db.enums import SlotStatus
from medbook.schemas.booking import BookingCreate
from medbook.services import booking_service, notification_service, slot_blocking_service


def _book(db, slot):
    return booking_service.book_slot(
        db,
        BookingCreate(slot_id=slot.id, client={"kind": "registered", "user_id": str(uuid.uuid4())}),
        now=NOW,
    )


def _refresh(db, *objects):
    for obj in objects:
        db.refresh(obj)


# =============================================================================
# Block / unblock
# =============================================================================

def test_event_blocks_free_slot_and_flags_booked_one(db, slots, make_event, provider_owner):
    nine, ten, eleven = slots
    booking = _book(db, ten)
    event = make_event(at(MONDAY, 9, 30), at(MONDAY, 10, 30))

    result = slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)
    db.commit()

    _refresh(db, nine, ten, eleven, event)
    assert nine.status == SlotStatus.BLOCKED.value
    assert nine.blocked_by_event_id == event.id
    assert ten.status == SlotStatus.BOOKED.value
    assert eleven.status == SlotStatus.AVAILABLE.value
    assert event.has_conflict is True
    assert event.conflict_details == "Overlaps with 1 existing booking(s)"
    assert result.blocked_count == 1
    assert result.conflict_booking_ids == [booking.id]
    assert result.new_conflict is True


def test_blocking_is_idempotent(db, slots, make_event, provider_owner):
    _book(db, slots[1])
    event = make_event(at(MONDAY, 9, 30), at(MONDAY, 10, 30))
    slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)

    again = slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)

    assert again.blocked_count == 0
    assert again.slot_ids == [slots[0].id]
    assert again.new_conflict is False


def test_unblock_restores_available(db, slots, make_event, provider_owner):
    event = make_event(at(MONDAY, 9, 30), at(MONDAY, 10, 30))
    slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)

    released = slot_blocking_service.unblock_slots_from_event(db, event.id, provider_owner, now=NOW)

    assert released == 2
    _refresh(db, *slots)
    assert [s.status for s in slots] == [SlotStatus.AVAILABLE.value] * 3
    assert all(s.blocked_by_event_id is None for s in slots)


def test_unblock_hands_slot_to_remaining_event(db, slots, make_event, provider_owner):
    first = make_event(at(MONDAY, 9), at(MONDAY, 9, 30))
    second = make_event(at(MONDAY, 9, 15), at(MONDAY, 9, 45))
    slot_blocking_service.block_slots_from_event(db, first, provider_owner, now=NOW)
    slot_blocking_service.block_slots_from_event(db, second, provider_owner, now=NOW)
    db.refresh(slots[0])
    assert slots[0].blocked_by_event_id == first.id

    released = slot_blocking_service.unblock_slots_from_event(db, first.id, provider_owner, now=NOW)

    assert released == 0
    db.refresh(slots[0])
    assert slots[0].status == SlotStatus.BLOCKED.value
    assert slots[0].blocked_by_event_id == second.id


def test_non_blocking_event_is_ignored(db, slots, make_event, provider_owner):
    event = make_event(at(MONDAY, 9), at(MONDAY, 12), blocks=False)

    result = slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)

    assert result.blocked_count == 0
    _refresh(db, *slots)
    assert all(s.status == SlotStatus.AVAILABLE.value for s in slots)


def test_past_event_is_ignored(db, slots, make_event, provider_owner):
    event = make_event(at(MONDAY, 9), at(MONDAY, 10))

    result = slot_blocking_service.block_slots_from_event(
        db, event, provider_owner, now=at(MONDAY, 11)
    )

    assert result.blocked_count == 0


def test_other_owner_slots_are_untouched(db, make_window, make_event, org_owner, provider_owner):
    change = make_window(owner=org_owner)
    event = make_event(at(MONDAY, 9), at(MONDAY, 12))

    slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)

    org_slots = window_slots(db, change.window.id)
    assert all(s.status == SlotStatus.AVAILABLE.value for s in org_slots)


def test_new_slots_start_blocked_under_existing_event(db, make_window, make_event):
    event = make_event(at(MONDAY, 10), at(MONDAY, 11))

    change = make_window()

    statuses = [(s.start_time, s.status) for s in window_slots(db, change.window.id)]
    assert statuses == [
        (at(MONDAY, 9), SlotStatus.AVAILABLE.value),
        (at(MONDAY, 10), SlotStatus.BLOCKED.value),
        (at(MONDAY, 11), SlotStatus.AVAILABLE.value),
    ]
    blocked = window_slots(db, change.window.id)[1]
    assert blocked.blocked_by_event_id == event.id


def test_notifications_published_for_block_and_conflict(db, slots, make_event, provider_owner):
    _book(db, slots[1])
    event = make_event(at(MONDAY, 9, 30), at(MONDAY, 10, 30))
    received = []
    dispatcher = notification_service.NotificationDispatcher()
    dispatcher.subscribe(notification_service.SlotBlocked, received.append)
    dispatcher.subscribe(notification_service.ConflictDetected, received.append)

    result = slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)
    db.commit()
    slot_blocking_service.publish_blocking_notifications(event, provider_owner, result, dispatcher)

    assert [type(e).__name__ for e in received] == ["SlotBlocked", "ConflictDetected"]
    assert received[0].slot_ids == (slots[0].id,)


# =============================================================================
# Regeneration
# =============================================================================

def test_regeneration_releases_stale_blocks(db, slots, make_event, provider_owner):
    event = make_event(at(MONDAY, 9, 30), at(MONDAY, 10, 30))
    slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)
    event.blocks_availability = False
    db.commit()

    result = slot_blocking_service.regenerate_slots_for_owner(db, provider_owner, now=NOW)

    assert result.slots_released == 2
    assert result.events_processed == 0
    _refresh(db, *slots)
    assert all(s.status == SlotStatus.AVAILABLE.value for s in slots)


def test_regeneration_reapplies_events(db, slots, make_event, provider_owner):
    make_event(at(MONDAY, 11), at(MONDAY, 11, 30))
    db.commit()

    result = slot_blocking_service.regenerate_slots_for_owner(db, provider_owner, now=NOW)
    repeat = slot_blocking_service.regenerate_slots_for_owner(db, provider_owner, now=NOW)

    assert (result.events_processed, result.slots_blocked) == (1, 1)
    assert repeat.slots_blocked == 0
    db.refresh(slots[2])
    assert slots[2].status == SlotStatus.BLOCKED.value


def test_regeneration_for_all_owners(db, slots, make_event):
    make_event(at(MONDAY, 11), at(MONDAY, 11, 30))
    db.commit()

    totals = slot_blocking_service.regenerate_slots_for_all_owners(db, now=NOW)

    assert totals["owners_processed"] == 1
    assert totals["owners_failed"] == 0
    assert totals["slots_blocked"] == 1


def test_blocking_stats(db, slots, make_event, provider_owner):
    _book(db, slots[1])
    event = make_event(at(MONDAY, 9, 30), at(MONDAY, 10, 30))
    slot_blocking_service.block_slots_from_event(db, event, provider_owner, now=NOW)
    db.commit()

    stats = slot_blocking_service.get_blocking_stats(db, provider_owner, now=NOW)

    assert stats == {
        "total_future_slots": 3,
        "available_slots": 1,
        "booked_slots": 1,
        "blocked_slots": 1,
        "blocking_events": 1,
        "events_with_conflicts": 1,
    }
