import pytest
from datetime import timedelta, timezone

from notification_engine.db.models import Priority
from notification_engine.schemas.notification_schemas import Candidate
from notification_engine.services.notifications.kinds import (
    EVENT_REMINDER,
    PROFILE_COMPLETION,
    WAITLIST_PROMOTED,
)
from notification_engine.services.notifications.window_evaluator import WindowEvaluator
from notification_engine.utils.errors import BusinessLogicError, EntityStoreError


@pytest.fixture
def evaluator(entity_store, registry):
    return WindowEvaluator(entity_store, registry)


class TestWindowsFor:
    """Test window arithmetic per offset."""

    def test_one_window_per_offset(self, registry, now):
        windows = WindowEvaluator.windows_for(registry.get(EVENT_REMINDER), now)

        assert [w.offset_label for w in windows] == ["7d", "1d", "2h", "30m"]

    def test_window_bounds(self, registry, now):
        windows = {
            w.offset_label: w
            for w in WindowEvaluator.windows_for(registry.get(EVENT_REMINDER), now)
        }

        two_hours = windows["2h"]
        assert two_hours.start == now + timedelta(hours=2) - timedelta(minutes=10)
        assert two_hours.end == now + timedelta(hours=2) + timedelta(minutes=10)

    def test_recurring_kind_uses_trailing_period(self, registry, now):
        kind = registry.get(PROFILE_COMPLETION)
        (window,) = WindowEvaluator.windows_for(kind, now)

        assert window.end == now
        assert window.start == now - kind.period
        assert window.offset_label == kind.period_key(now)


class TestEvaluate:
    """Test candidate selection for a kind."""

    def test_candidate_inside_two_hour_window(self, evaluator, seeded_store, now):
        """Event at T, tick at T - 2h + 5m: fires the 2h reminder at high priority."""
        (assignment,) = evaluator.evaluate(EVENT_REMINDER, now)

        assert assignment.candidate.occurrence_key == "2h"
        assert assignment.candidate.kind == EVENT_REMINDER
        assert assignment.candidate.related_entity_id == "event-1"
        assert assignment.priority == Priority.HIGH

    def test_filters_passed_to_store(self, evaluator, seeded_store, now):
        evaluator.evaluate(EVENT_REMINDER, now)

        assert len(seeded_store.queries) == 4
        _, _, filters = seeded_store.queries[0]
        assert filters["registration_status"] == "approved"

    def test_candidate_outside_every_window(self, evaluator, entity_store, now):
        entity_store.add_candidate(
            EVENT_REMINDER,
            Candidate(
                kind=EVENT_REMINDER,
                recipient_id="user-1",
                related_entity_id="event-9",
                target_time=now + timedelta(hours=5),
            ),
        )

        assert evaluator.evaluate(EVENT_REMINDER, now) == []

    def test_store_returning_out_of_window_rows_is_filtered(
        self, evaluator, entity_store, now
    ):
        entity_store.unbounded_candidates = True
        entity_store.add_candidate(
            EVENT_REMINDER,
            Candidate(
                kind=EVENT_REMINDER,
                recipient_id="user-1",
                related_entity_id="event-9",
                target_time=now + timedelta(hours=5),
            ),
        )

        assert evaluator.evaluate(EVENT_REMINDER, now) == []

    def test_same_occurrence_collapsed(self, evaluator, seeded_store, sample_candidate, now):
        seeded_store.add_candidate(EVENT_REMINDER, sample_candidate)

        assert len(evaluator.evaluate(EVENT_REMINDER, now)) == 1

    @pytest.mark.parametrize("utc_offset_hours", [0, 7])
    def test_timezone_aware_target_time(
        self, evaluator, entity_store, event_start, now, utc_offset_hours
    ):
        tz = timezone(timedelta(hours=utc_offset_hours))
        entity_store.add_candidate(
            EVENT_REMINDER,
            Candidate(
                kind=EVENT_REMINDER,
                recipient_id="user-1",
                related_entity_id="event-1",
                target_time=event_start.replace(tzinfo=timezone.utc).astimezone(tz),
            ),
        )

        (assignment,) = evaluator.evaluate(EVENT_REMINDER, now)

        assert assignment.candidate.occurrence_key == "2h"
        assert assignment.candidate.target_time == event_start
        assert assignment.candidate.target_time.tzinfo is None

    def test_store_failure_aborts_kind(self, evaluator, seeded_store, now):
        seeded_store.fail_queries = True

        with pytest.raises(EntityStoreError):
            evaluator.evaluate(EVENT_REMINDER, now)

    def test_unexpected_store_exception_wrapped(self, evaluator, entity_store, now):
        def broken(*args, **kwargs):
            raise RuntimeError("connection reset")

        entity_store.find_candidates = broken

        with pytest.raises(EntityStoreError, match="connection reset"):
            evaluator.evaluate(EVENT_REMINDER, now)

    def test_on_demand_kind_rejected(self, evaluator, now):
        with pytest.raises(BusinessLogicError) as exc_info:
            evaluator.evaluate(WAITLIST_PROMOTED, now)
        assert exc_info.value.error_code == "KIND_NOT_SCHEDULED"

    def test_recurring_kind_gets_period_occurrence_key(
        self, evaluator, entity_store, registry, now
    ):
        entity_store.add_candidate(
            PROFILE_COMPLETION,
            Candidate(
                kind=PROFILE_COMPLETION,
                recipient_id="user-2",
                data={"profile_completion": 40},
            ),
        )

        (assignment,) = evaluator.evaluate(PROFILE_COMPLETION, now)

        kind = registry.get(PROFILE_COMPLETION)
        assert assignment.candidate.occurrence_key == kind.period_key(now)
        assert assignment.candidate.related_entity_id is None
        assert assignment.priority == Priority.LOW
