"""Tests for overlap checks and slot suggestions."""

from datetime import UTC, datetime, time, timedelta

import pytest
from sqlmodel import Session

from app.core.errors import SchedulingConflict, SchedulingValidationError
from app.models import ExternalBlock
from app.scheduling import service
from app.scheduling.conflicts import (
    WorkingHours,
    busy_intervals,
    suggest_slots,
    validate_interval,
    validate_no_overlap,
)

UTC_HOURS = WorkingHours(timezone="UTC")


def at(hour: int, minute: int = 0, day: int = 2) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=UTC)


def add_block(session: Session, start: datetime, end: datetime, **kwargs) -> ExternalBlock:
    block = ExternalBlock(
        calendar_id="cal-1",
        google_event_id=kwargs.pop("google_event_id", f"g-{start.isoformat()}"),
        clinic_id="clinic-1",
        resource_id="consultant-1",
        start_at=start,
        end_at=end,
        **kwargs,
    )
    session.add(block)
    session.commit()
    return block


class TestValidateInterval:
    def test_missing_bound(self):
        """Test that both bounds are required."""
        with pytest.raises(SchedulingValidationError):
            validate_interval(at(10), None)

    def test_end_before_start(self):
        """Test that an end before the start is rejected."""
        with pytest.raises(SchedulingValidationError):
            validate_interval(at(11), at(10))

    def test_zero_length(self):
        """Test that an empty interval is rejected."""
        with pytest.raises(SchedulingValidationError):
            validate_interval(at(10), at(10))

    def test_returns_utc(self):
        """Test that bounds come back in UTC."""
        start, end = validate_interval(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
        assert start == at(10)
        assert end.tzinfo is not None


class TestValidateNoOverlap:
    def test_overlap_is_rejected(self, session: Session, make_event):
        """Test that a partial overlap raises a conflict."""
        make_event(start_hour=10)
        with pytest.raises(SchedulingConflict) as exc_info:
            validate_no_overlap(session, "consultant-1", at(10, 30), at(11, 30))
        assert exc_info.value.message == "Time already taken."

    def test_touching_intervals_are_free(self, session: Session, make_event):
        """Test that back-to-back bookings do not conflict."""
        make_event(start_hour=10)
        validate_no_overlap(session, "consultant-1", at(11), at(12))
        validate_no_overlap(session, "consultant-1", at(9), at(10))

    def test_other_consultant_is_free(self, session: Session, make_event):
        """Test that another consultant's events are ignored."""
        make_event(start_hour=10)
        validate_no_overlap(session, "consultant-2", at(10), at(11))

    def test_excluding_self(self, session: Session, make_event):
        """Test that an event does not conflict with itself."""
        event = make_event(start_hour=10)
        validate_no_overlap(session, "consultant-1", at(10, 15), at(11, 15), excluding_event_id=event.id)

    def test_cancelled_event_frees_slot(self, session: Session, make_event):
        """Test that cancelled events never conflict."""
        event = make_event(start_hour=10)
        service.cancel_event(session, event.id)
        validate_no_overlap(session, "consultant-1", at(10), at(11))

    def test_recurring_occurrence_conflicts(self, session: Session, make_event):
        """The trigger only sees the first occurrence; the early check sees them all."""
        make_event(start_hour=10, recurrence_rule="FREQ=WEEKLY;BYDAY=MO")
        with pytest.raises(SchedulingConflict):
            validate_no_overlap(session, "consultant-1", at(10, 30, day=16), at(11, 30, day=16))
        validate_no_overlap(session, "consultant-1", at(10, 30, day=17), at(11, 30, day=17))


class TestBusyIntervals:
    def test_events_and_external_blocks(self, session: Session, make_event):
        """Test that events and imported blocks are both busy."""
        make_event(start_hour=10)
        add_block(session, at(14), at(15))

        assert busy_intervals(session, "consultant-1", at(0), at(23)) == [(at(10), at(11)), (at(14), at(15))]

    def test_cancelled_and_all_day_blocks_are_ignored(self, session: Session):
        """Test that cancelled and all-day blocks do not block time."""
        add_block(session, at(14), at(15), status="cancelled")
        add_block(session, at(0), at(0, day=3), all_day=True)

        assert busy_intervals(session, "consultant-1", at(0), at(23)) == []

    def test_recurring_series_is_expanded(self, session: Session, make_event):
        """Test that a daily series is expanded inside the window."""
        make_event(start_hour=10, recurrence_rule="FREQ=DAILY")

        busy = busy_intervals(session, "consultant-1", at(0, day=4), at(0, day=6))
        assert busy == [(at(10, day=4), at(11, day=4)), (at(10, day=5), at(11, day=5))]


class TestSuggestSlots:
    def test_buffer_around_existing_event(self, session: Session, make_event):
        """A 10:00-11:00 event with a 15 minute buffer leaves 09:00 and 11:15 onwards."""
        make_event(start_hour=10)

        slots = suggest_slots(
            session,
            "consultant-1",
            duration_minutes=60,
            search_start=at(9),
            search_end=at(12),
            working_hours=UTC_HOURS,
            buffer_minutes=15,
            limit=10,
        )

        starts = [slot.start_at for slot in slots]
        assert starts == [at(9), at(11, 15), at(11, 30), at(11, 45)]
        assert all(slot.end_at - slot.start_at == timedelta(hours=1) for slot in slots)

    def test_without_buffer(self, session: Session, make_event):
        """Test that slots start right after an event without a buffer."""
        make_event(start_hour=10)

        slots = suggest_slots(
            session, "consultant-1", 60, at(9), at(11, 30), working_hours=UTC_HOURS, limit=10
        )
        assert [slot.start_at for slot in slots] == [at(9), at(11), at(11, 15)]

    def test_external_block_is_busy(self, session: Session):
        """Test that imported blocks are skipped."""
        add_block(session, at(9), at(12))

        slots = suggest_slots(session, "consultant-1", 60, at(9), at(13), working_hours=UTC_HOURS)
        assert [slot.start_at for slot in slots] == [at(12), at(12, 15), at(12, 30), at(12, 45)]

    def test_limit(self, session: Session):
        """Test that no more than limit slots are returned."""
        slots = suggest_slots(session, "consultant-1", 30, at(9), at(17), working_hours=UTC_HOURS, limit=3)
        assert [slot.start_at for slot in slots] == [at(9), at(9, 15), at(9, 30)]

    def test_slot_must_end_within_working_hours(self, session: Session):
        """Test that a slot running past working hours is dropped."""
        slots = suggest_slots(session, "consultant-1", 60, at(16), at(18), working_hours=UTC_HOURS, limit=10)
        assert [slot.start_at for slot in slots] == [at(16), at(16, 15), at(16, 30), at(16, 45), at(17)]

    def test_weekend_has_no_slots(self, session: Session):
        """Test that non-working days yield nothing."""
        saturday = datetime(2026, 3, 7, tzinfo=UTC)
        slots = suggest_slots(
            session, "consultant-1", 60, saturday, saturday + timedelta(days=1), working_hours=UTC_HOURS
        )
        assert slots == []

    def test_start_is_aligned_to_granularity(self, session: Session):
        """Test that candidate starts are rounded up to the step."""
        slots = suggest_slots(session, "consultant-1", 30, at(9, 7), at(10), working_hours=UTC_HOURS, limit=1)
        assert slots[0].start_at == at(9, 15)

    def test_working_hours_in_local_time(self, session: Session):
        """09:00 in Sao Paulo is 12:00 UTC."""
        hours = WorkingHours(days=[1], start=time(9), end=time(10), timezone="America/Sao_Paulo")
        slots = suggest_slots(session, "consultant-1", 60, at(0), at(23), working_hours=hours, limit=10)
        assert [slot.start_at for slot in slots] == [at(12)]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"duration_minutes": 0},
            {"duration_minutes": 30, "buffer_minutes": -5},
            {"duration_minutes": 30, "limit": 0},
        ],
    )
    def test_invalid_arguments(self, session: Session, kwargs):
        """Test validation of duration, buffer, step and limit."""
        with pytest.raises(SchedulingValidationError):
            suggest_slots(session, "consultant-1", search_start=at(9), search_end=at(12), **kwargs)
