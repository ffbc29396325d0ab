"""
Tests for ExecutionLogService queries and stats.
"""
from datetime import timedelta

import pytest

from fieldflow.services.automation.execution_log import ExecutionLogService

from .conftest import NOW, OTHER_TENANT_ID, TENANT_ID


@pytest.fixture
def log(db_session):
    return ExecutionLogService(db_session)


def write(log, rule, entity_id="job-1", passed=True, suppression=None, at=NOW, tenant_id=TENANT_ID, test_mode=None):
    if test_mode is not None:
        rule.test_mode = test_mode
    execution = log.log_execution(
        tenant_id, rule, "job", entity_id, "job.created",
        conditions_passed=passed,
        actions_taken=[{"type": "send_email", "status": "executed"}] if passed else None,
        suppression_reason=suppression,
        executed_at=at,
    )
    log.db.commit()
    return execution


class TestFiringHistory:

    def test_counts_only_passing_rows(self, log, make_rule):
        rule = make_rule()
        write(log, rule, at=NOW)
        write(log, rule, passed=False, at=NOW + timedelta(minutes=5))
        write(log, rule, passed=False, suppression="Cooldown", at=NOW + timedelta(minutes=6))
        write(log, rule, at=NOW + timedelta(minutes=2))

        history = log.get_firing_history(TENANT_ID, rule.lineage_id, "job-1")

        assert history.fire_count == 2
        assert history.last_fired_at == NOW + timedelta(minutes=2)

    def test_empty_history(self, log, make_rule):
        rule = make_rule()

        history = log.get_firing_history(TENANT_ID, rule.lineage_id, "job-1")

        assert history.fire_count == 0
        assert history.last_fired_at is None


class TestFindExecutions:

    def test_newest_first_with_total(self, log, make_rule):
        rule = make_rule()
        for minutes in range(5):
            write(log, rule, at=NOW + timedelta(minutes=minutes))

        data, total = log.find_executions(TENANT_ID, page=1, limit=2)

        assert total == 5
        assert [e.executed_at for e in data] == [NOW + timedelta(minutes=4), NOW + timedelta(minutes=3)]

    def test_filters(self, log, make_rule):
        rule = make_rule()
        other_rule = make_rule(name="other")
        write(log, rule, entity_id="job-1", at=NOW)
        write(log, rule, entity_id="job-2", at=NOW + timedelta(hours=2))
        write(log, other_rule, entity_id="job-1", at=NOW)

        assert log.find_executions(TENANT_ID, rule_id=rule.id)[1] == 2
        assert log.find_executions(TENANT_ID, entity_id="job-1")[1] == 2
        assert log.find_executions(TENANT_ID, entity_type="invoice")[1] == 0
        assert log.find_executions(TENANT_ID, start_date=NOW + timedelta(hours=1))[1] == 1
        assert log.find_executions(TENANT_ID, end_date=NOW)[1] == 2
        assert log.find_executions(OTHER_TENANT_ID)[1] == 0


class TestExecutionStats:

    def test_groups_outcomes(self, log, make_rule):
        busy = make_rule(name="busy")
        quiet = make_rule(name="quiet")
        write(log, busy)
        write(log, busy, passed=False)
        write(log, busy, passed=False, suppression="Quiet hours: 22:00 - 06:00")
        write(log, quiet, test_mode=True)

        stats = log.get_execution_stats(TENANT_ID)

        assert stats["total_executions"] == 4
        assert stats["conditions_passed"] == 2
        assert stats["conditions_failed"] == 1
        assert stats["suppressed"] == 1
        assert stats["test_mode"] == 1
        assert stats["fired"] == 1
        assert stats["by_rule"] == [
            {"rule_id": busy.id, "rule_name": "busy", "count": 3},
            {"rule_id": quiet.id, "rule_name": "quiet", "count": 1},
        ]

    def test_window(self, log, make_rule):
        rule = make_rule()
        write(log, rule, at=NOW - timedelta(days=2))
        write(log, rule, at=NOW)

        stats = log.get_execution_stats(TENANT_ID, start_date=NOW - timedelta(days=1), end_date=NOW)

        assert stats["total_executions"] == 1

    def test_other_tenant_not_counted(self, log, make_rule):
        write(log, make_rule(tenant_id=OTHER_TENANT_ID), tenant_id=OTHER_TENANT_ID)

        assert log.get_execution_stats(TENANT_ID)["total_executions"] == 0
