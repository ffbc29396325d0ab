"""
Tests for JobLifecycleService.

Tests:
1. Accepted transitions persist, record history and emit job.transitioned
2. Side fields (scheduled date, invoice id, start/completion timestamps)
3. Rejected transitions leave job and history untouched
4. Stale context detection (expected status, concurrent writer)
5. Initial history entry and history queries
"""
import pytest
from datetime import date
from unittest.mock import MagicMock

from fieldflow.exceptions import InvalidTransitionError, JobNotFoundError, StaleContextError
from fieldflow.models.db_models import JobLifecycleState
from fieldflow.models.lifecycle import JobRecord, TransitionEvent, TransitionEventType
from fieldflow.services.lifecycle.job_lifecycle_service import JOB_TRANSITIONED_EVENT, JobLifecycleService
from fieldflow.services.interfaces import HistorySink
from fieldflow.services.lifecycle.transition_recorder import TransitionRecorder

from .conftest import NOW, OTHER_TENANT_ID, TENANT_ID


S = JobLifecycleState
E = TransitionEventType


@pytest.fixture
def rule_engine():
    return MagicMock()


@pytest.fixture
def service(job_store, history_sink, clock, rule_engine):
    return JobLifecycleService(job_store, history_sink, clock=clock, rule_engine=rule_engine)


def add_job(job_store, status=S.LEAD, **kwargs) -> JobRecord:
    return job_store.add(JobRecord(id=kwargs.pop("id", "job-1"), tenant_id=TENANT_ID, status=status, **kwargs))


class TestTransition:
    """Accepted transitions."""

    def test_qualify_persists_and_records_history(self, service, job_store, history_sink):
        add_job(job_store, has_contact_info=True)

        updated = service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.QUALIFY), actor_id="user-1", actor_name="Dana")

        assert updated.status == S.QUALIFIED
        assert updated.version == 1
        assert job_store.jobs[(TENANT_ID, "job-1")].status == S.QUALIFIED

        assert len(history_sink.entries) == 1
        entry = history_sink.entries[0]
        assert entry.previous_state == S.LEAD
        assert entry.new_state == S.QUALIFIED
        assert entry.event_type == "QUALIFY"
        assert entry.actor_id == "user-1"
        assert entry.actor_name == "Dana"
        assert entry.timestamp == NOW

    def test_emits_job_transitioned_event(self, service, job_store, rule_engine):
        add_job(job_store, status=S.IN_PROGRESS, attributes={"customer_name": "Acme"})

        service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.COMPLETE_WORK))

        rule_engine.evaluate_event.assert_called_once()
        tenant_id, event_name, entity_type, entity_id, snapshot = rule_engine.evaluate_event.call_args[0]
        assert tenant_id == TENANT_ID
        assert event_name == JOB_TRANSITIONED_EVENT
        assert entity_type == "job"
        assert entity_id == "job-1"
        assert snapshot["previous_status"] == "IN_PROGRESS"
        assert snapshot["new_status"] == "COMPLETED"
        assert snapshot["transition"] == "COMPLETE_WORK"
        assert snapshot["customer_name"] == "Acme"

    def test_rule_engine_failure_does_not_undo_transition(self, service, job_store, rule_engine):
        add_job(job_store, status=S.SCHEDULED)
        rule_engine.evaluate_event.side_effect = RuntimeError("engine down")

        updated = service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.DISPATCH))

        assert updated.status == S.DISPATCHED
        assert job_store.jobs[(TENANT_ID, "job-1")].status == S.DISPATCHED

    def test_caller_supplied_facts_override_store(self, service, job_store):
        add_job(job_store, status=S.INVOICED, is_fully_paid=False)

        updated = service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.MARK_PAID), is_fully_paid=True)

        assert updated.status == S.PAID


class TestSideFields:

    def test_schedule_sets_date(self, service, job_store, history_sink):
        add_job(job_store, status=S.QUALIFIED)

        updated = service.transition(TENANT_ID, "job-1", TransitionEvent.schedule(date(2024, 2, 1)))

        assert updated.scheduled_date == date(2024, 2, 1)
        assert history_sink.entries[0].metadata["scheduled_date"] == "2024-02-01"

    def test_create_invoice_sets_invoice_id(self, service, job_store):
        add_job(job_store, status=S.COMPLETED)

        updated = service.transition(TENANT_ID, "job-1", TransitionEvent.create_invoice("inv-9"))

        assert updated.invoice_id == "inv-9"

    def test_start_and_complete_stamp_times(self, service, job_store, clock):
        add_job(job_store, status=S.DISPATCHED)

        started = service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.START_WORK))
        assert started.actual_start_time == NOW

        clock.advance(hours=3)
        completed = service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.COMPLETE_WORK))
        assert completed.actual_end_time == clock.now()
        assert completed.completed_at == clock.now()
        assert completed.actual_start_time == NOW

    def test_cancel_records_reason(self, service, job_store, history_sink):
        add_job(job_store, status=S.QUALIFIED)

        service.transition(TENANT_ID, "job-1", TransitionEvent.cancel("Customer moved"))

        assert history_sink.entries[0].reason == "Customer moved"


class TestRejectedTransitions:

    def test_illegal_event_raises_and_changes_nothing(self, service, job_store, history_sink, rule_engine):
        add_job(job_store, status=S.LEAD)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.COMPLETE_WORK))

        assert exc_info.value.current_state == S.LEAD
        assert exc_info.value.event_type == "COMPLETE_WORK"
        assert job_store.jobs[(TENANT_ID, "job-1")].status == S.LEAD
        assert job_store.persist_calls == 0
        assert history_sink.entries == []
        rule_engine.evaluate_event.assert_not_called()

    def test_guard_failure_raises(self, service, job_store):
        add_job(job_store, status=S.LEAD, has_contact_info=False)

        with pytest.raises(InvalidTransitionError, match="contact info"):
            service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.QUALIFY))

    def test_terminal_job_rejects_everything(self, service, job_store):
        add_job(job_store, status=S.PAID)

        with pytest.raises(InvalidTransitionError):
            service.transition(TENANT_ID, "job-1", TransitionEvent.cancel("too late"))

    def test_unknown_job(self, service):
        with pytest.raises(JobNotFoundError):
            service.transition(TENANT_ID, "missing", TransitionEvent.of(E.QUALIFY))

    def test_other_tenant_cannot_see_job(self, service, job_store):
        add_job(job_store, has_contact_info=True)

        with pytest.raises(JobNotFoundError):
            service.transition(OTHER_TENANT_ID, "job-1", TransitionEvent.of(E.QUALIFY))


class TestStaleContext:

    def test_expected_status_mismatch(self, service, job_store, history_sink):
        add_job(job_store, status=S.QUALIFIED)

        with pytest.raises(StaleContextError) as exc_info:
            service.transition(
                TENANT_ID, "job-1", TransitionEvent.of(E.SEND_ESTIMATE), expected_status=S.LEAD,
            )

        assert exc_info.value.expected == "LEAD"
        assert exc_info.value.actual == "QUALIFIED"
        assert history_sink.entries == []

    def test_concurrent_writer_detected_on_persist(self, service, job_store, history_sink):
        add_job(job_store, status=S.QUALIFIED)
        original_load = job_store.load_job

        def load_then_race(tenant_id, job_id):
            job = original_load(tenant_id, job_id)
            # Another writer bumps the stored version after our read
            stored = job_store.jobs[(tenant_id, job_id)]
            job_store.jobs[(tenant_id, job_id)] = JobRecord(
                id=stored.id, tenant_id=stored.tenant_id, status=S.CANCELLED, version=stored.version + 1,
            )
            job_store.load_job = original_load
            return job

        job_store.load_job = load_then_race

        with pytest.raises(StaleContextError):
            service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.SEND_ESTIMATE))

        assert job_store.jobs[(TENANT_ID, "job-1")].status == S.CANCELLED
        assert history_sink.entries == []


class TestHistory:

    def test_record_initial_state(self, service, job_store, history_sink):
        job = add_job(job_store)

        service.record_initial_state(job, actor_id="user-1")

        entry = history_sink.entries[0]
        assert entry.previous_state is None
        assert entry.new_state == S.LEAD
        assert entry.event_type is None

    def test_get_history_in_order(self, service, job_store):
        job = add_job(job_store, has_contact_info=True)
        service.record_initial_state(job)
        service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.QUALIFY))
        service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.SEND_ESTIMATE))

        history = service.get_history(TENANT_ID, "job-1")

        assert [h.new_state for h in history] == [S.LEAD, S.QUALIFIED, S.ESTIMATE_SENT]

    def test_get_available_transitions(self, service, job_store):
        add_job(job_store, status=S.COMPLETED)

        assert service.get_available_transitions(TENANT_ID, "job-1") == ["CREATE_INVOICE"]

    def test_transition_recorder_persists_rows(self, db_session, job_store, clock):
        recorder = TransitionRecorder(db_session)
        service = JobLifecycleService(job_store, recorder, clock=clock)
        job = add_job(job_store, has_contact_info=True)

        service.record_initial_state(job)
        clock.advance(minutes=1)
        service.transition(TENANT_ID, "job-1", TransitionEvent.of(E.QUALIFY), actor_name="Dana")
        db_session.commit()

        rows = recorder.get_history(TENANT_ID, "job-1")
        assert [(r.previous_state, r.new_state) for r in rows] == [(None, S.LEAD), (S.LEAD, S.QUALIFIED)]
        assert rows[1].event_type == "QUALIFY"
        assert rows[1].actor_name == "Dana"
        assert recorder.get_history(OTHER_TENANT_ID, "job-1") == []

    def test_history_sink_must_support_queries(self):
        class AppendOnlySink(HistorySink):
            def append_history(self, entry):
                pass

        with pytest.raises(TypeError):
            AppendOnlySink()
