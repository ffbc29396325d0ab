"""
Tests for the bundled dispatchers and the bounded fan-out helper.
"""
import threading

import pytest

from fieldflow.exceptions import ActionDispatchError
from fieldflow.services.automation.dispatchers import LoggingActionDispatcher, RoutingActionDispatcher
from fieldflow.services.automation.fanout import DispatchJob, batch_deadline_seconds, dispatch_concurrently
from fieldflow.services.interfaces import DispatchOutcome


CONTEXT = {"tenant_id": "tenant-1", "entity_type": "job", "entity_id": "job-1"}


class TestRoutingActionDispatcher:

    def test_routes_to_handler(self):
        calls = []
        dispatcher = RoutingActionDispatcher({"send_email": lambda config, ctx: calls.append((config, ctx))})

        outcome = dispatcher.dispatch("send_email", {"template": "thanks"}, CONTEXT)

        assert outcome.success is True
        assert calls == [({"template": "thanks"}, CONTEXT)]

    def test_handler_outcome_returned(self):
        dispatcher = RoutingActionDispatcher()
        dispatcher.register("send_sms", lambda config, ctx: DispatchOutcome.failed("Invalid number"))

        outcome = dispatcher.dispatch("send_sms", {}, CONTEXT)

        assert outcome.success is False
        assert outcome.details == "Invalid number"

    def test_unknown_action_type(self):
        with pytest.raises(ActionDispatchError, match="update_field"):
            RoutingActionDispatcher().dispatch("update_field", {}, CONTEXT)

    def test_logging_dispatcher_succeeds(self):
        assert LoggingActionDispatcher().dispatch("notify", {}, CONTEXT).success is True


class TestDispatchConcurrently:

    def test_one_result_per_job(self):
        dispatcher = RoutingActionDispatcher({
            "ok": lambda config, ctx: None,
            "bad": lambda config, ctx: DispatchOutcome.failed("nope"),
        })
        jobs = [
            DispatchJob(key="a", action_type="ok", config={}, entity_context=CONTEXT),
            DispatchJob(key="b", action_type="bad", config={}, entity_context=CONTEXT),
            DispatchJob(key="c", action_type="missing", config={}, entity_context=CONTEXT),
        ]

        results = dispatch_concurrently(dispatcher, jobs, max_workers=2, timeout_seconds=5)

        assert results["a"].succeeded is True
        assert results["b"].succeeded is False
        assert results["b"].failure_details == "nope"
        assert results["c"].succeeded is False
        assert "missing" in results["c"].failure_details

    def test_concurrency_is_bounded(self):
        lock = threading.Lock()
        running = []
        peak = []

        def handler(config, ctx):
            with lock:
                running.append(1)
                peak.append(len(running))
            threading.Event().wait(0.02)
            with lock:
                running.pop()

        dispatcher = RoutingActionDispatcher({"work": handler})
        jobs = [DispatchJob(key=i, action_type="work", config={}, entity_context=CONTEXT) for i in range(8)]

        results = dispatch_concurrently(dispatcher, jobs, max_workers=3, timeout_seconds=5)

        assert all(r.succeeded for r in results.values())
        assert max(peak) <= 3

    def test_hung_dispatch_times_out(self):
        release = threading.Event()
        dispatcher = RoutingActionDispatcher({"hang": lambda config, ctx: release.wait(5)})
        jobs = [DispatchJob(key="slow", action_type="hang", config={}, entity_context=CONTEXT)]

        try:
            results = dispatch_concurrently(dispatcher, jobs, max_workers=1, timeout_seconds=0.05)
        finally:
            release.set()

        assert results["slow"].timed_out is True
        assert results["slow"].failure_details == "Dispatch timed out"

    def test_non_outcome_return_is_failure(self):
        class BrokenDispatcher(LoggingActionDispatcher):
            def dispatch(self, action_type, config, entity_context):
                return "done"

        jobs = [DispatchJob(key="x", action_type="notify", config={}, entity_context=CONTEXT)]

        results = dispatch_concurrently(BrokenDispatcher(), jobs, max_workers=1, timeout_seconds=5)

        assert results["x"].succeeded is False

    def test_no_jobs(self):
        assert dispatch_concurrently(LoggingActionDispatcher(), [], max_workers=4, timeout_seconds=1) == {}

    @pytest.mark.parametrize("job_count, max_workers, expected", [
        (0, 8, 0.0),
        (3, 8, 30.0),
        (8, 8, 30.0),
        (81, 8, 330.0),
        (3, 1, 90.0),
    ])
    def test_batch_deadline_scales_with_waves(self, job_count, max_workers, expected):
        assert batch_deadline_seconds(job_count, max_workers, 30.0) == expected
