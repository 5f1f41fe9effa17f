"""Tests for step graph execution: waits, branching, splits, retries and the loop guard."""

import random
from datetime import timedelta

import pytest

from crm_automation.actions.dispatcher import ActionDispatcher
from crm_automation.core.enrollment import Enrollment, EnrollmentStatus, FailureReason
from crm_automation.core.errors import PermanentDispatchError, TransientDispatchError
from crm_automation.store.control import ControlRequestStore
from crm_automation.store.enrollment_store import EnrollmentStore
from crm_automation.workflow.executor import (
    ExecutionContext,
    PassOutcome,
    StepGraphExecutor,
    choose_percentage_branch,
    split_bucket,
)
from crm_automation.workflow.retry import RetryPolicy
from tests.unit.workflow_fixtures import (
    branch,
    build_workflow,
    condition_step,
    email_step,
    end_step,
    goto_step,
    nurture_workflow,
    save_active,
    split_step,
    tag_step,
    wait_step,
)


def _enroll(engine, workflow_id, subject_id, now):
    result = engine.enroll(workflow_id, subject_id, now=now)
    assert result.enrolled, result.message
    return result.enrollment


class TestNurtureFlow:
    def test_tag_wait_email_end(self, engine, crm, now):
        save_active(engine, nurture_workflow())
        enrollment = _enroll(engine, "wf-nurture", "contact-1", now)

        assert crm.count("add_tags") == 1
        assert crm.count("send_email") == 0
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.current_step_id == "email"
        assert enrollment.next_step_at == now + timedelta(days=1)

        report = engine.tick(now + timedelta(days=1))

        assert report.succeeded == 1
        assert crm.count("send_email") == 1
        assert crm.calls_to("send_email")[0]["subject"] == "Hi Ada"
        finished = engine.get_enrollment(enrollment.id)
        assert finished.status == EnrollmentStatus.COMPLETED
        assert [s.step_id for s in finished.step_history] == ["tag", "wait", "email", "end"]

    def test_wait_does_not_resume_early(self, engine, crm, now):
        save_active(engine, nurture_workflow())
        enrollment = _enroll(engine, "wf-nurture", "contact-1", now)

        report = engine.tick(now + timedelta(days=1) - timedelta(seconds=1))

        assert report.processed == 0
        assert crm.count("send_email") == 0
        assert engine.get_enrollment(enrollment.id).status == EnrollmentStatus.ACTIVE

    def test_replayed_wake_ups_do_not_repeat_side_effects(self, engine, crm, now):
        save_active(engine, nurture_workflow())
        enrollment = _enroll(engine, "wf-nurture", "contact-1", now)

        # Duplicate wake-up before the wait elapses
        assert engine.process_enrollment(enrollment.id, now).outcome == PassOutcome.SKIPPED

        due = now + timedelta(days=1)
        engine.tick(due)
        engine.tick(due)
        assert engine.process_enrollment(enrollment.id, due).outcome == PassOutcome.SKIPPED

        assert crm.count("add_tags") == 1
        assert crm.count("send_email") == 1

    def test_idempotency_keys_are_stable_per_step(self, engine, crm, now):
        save_active(engine, nurture_workflow())
        enrollment = _enroll(engine, "wf-nurture", "contact-1", now)
        engine.tick(now + timedelta(days=1))

        keys = [call["idempotency_key"] for call in crm.calls]
        assert keys == [f"{enrollment.id}:0", f"{enrollment.id}:2"]


class TestConditions:
    def _scoring_workflow(self):
        return build_workflow([
            condition_step("score", [
                branch("hot", "tag-hot", [{"field": "lead_score", "operator": "greater_than", "value": 50}]),
                branch("warm", "tag-warm", [{"field": "lead_score", "operator": "greater_than", "value": 10}]),
                branch("cold", "end"),
            ]),
            tag_step("tag-hot", "end", tag_ids=["hot"]),
            tag_step("tag-warm", "end", tag_ids=["warm"]),
            end_step("end"),
        ], workflow_id="wf-score")

    def test_first_matching_branch_wins(self, engine, crm, now):
        save_active(engine, self._scoring_workflow())
        enrollment = _enroll(engine, "wf-score", "contact-1", now)  # lead_score 80

        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert crm.calls_to("add_tags")[0]["tag_ids"] == ["hot"]
        assert enrollment.step_history[0].branch_taken == "hot"

    def test_else_branch(self, engine, crm, now):
        save_active(engine, self._scoring_workflow())
        enrollment = _enroll(engine, "wf-score", "contact-3", now)  # lead_score 5

        assert crm.count("add_tags") == 0
        assert enrollment.step_history[0].branch_taken == "cold"

    def test_no_match_falls_through_to_next_step(self, engine, crm, now):
        workflow = build_workflow([
            condition_step(
                "check",
                [branch("vip", "end", [{"field": "tags", "operator": "contains", "value": "vip"}])],
                next_step_id="email",
            ),
            email_step("email", "end"),
            end_step("end"),
        ], workflow_id="wf-fallthrough")
        save_active(engine, workflow)

        enrollment = _enroll(engine, "wf-fallthrough", "contact-2", now)

        assert crm.count("send_email") == 1
        assert enrollment.step_history[0].branch_taken is None

    def test_conditions_see_effects_of_earlier_actions(self, engine, crm, now):
        workflow = build_workflow([
            tag_step("tag", "check", tag_ids=["vip"]),
            condition_step("check", [
                branch("is-vip", "email", [{"field": "tags", "operator": "contains", "value": "vip"}]),
                branch("other", "end"),
            ]),
            email_step("email", "end"),
            end_step("end"),
        ], workflow_id="wf-refresh")
        save_active(engine, workflow)

        _enroll(engine, "wf-refresh", "contact-2", now)
        assert crm.count("send_email") == 1


class TestSplits:
    def _split_workflow(self, split_type="percentage"):
        return build_workflow([
            split_step("split", [
                branch("a", "email-a", percentage=50),
                branch("b", "email-b", percentage=50),
            ], split_type=split_type),
            email_step("email-a", "end", subject="A"),
            email_step("email-b", "end", subject="B"),
            end_step("end"),
        ], workflow_id="wf-split")

    def test_percentage_split_follows_bucket(self, engine, crm, now):
        workflow = self._split_workflow()
        save_active(engine, workflow)
        enrollment = _enroll(engine, "wf-split", "contact-1", now)

        expected = choose_percentage_branch(workflow.get_step("split").branches, split_bucket(enrollment.id))
        assert enrollment.split_assignments == {"split": expected.id}
        assert crm.calls_to("send_email")[0]["subject"] == expected.id.upper()

    def test_split_bucket_is_deterministic(self):
        assert split_bucket("enr-abc") == split_bucket("enr-abc")
        assert 0 <= split_bucket("enr-abc") < 100

    def test_bucket_ranges(self):
        branches = self._split_workflow().get_step("split").branches
        assert choose_percentage_branch(branches, 10.0).id == "a"
        assert choose_percentage_branch(branches, 50.0).id == "b"
        assert choose_percentage_branch(branches, 99.99).id == "b"

    def test_random_split_assignment_is_replayed(self, tmp_path, engine, now):
        workflow = self._split_workflow(split_type="random")
        save_active(engine, workflow)
        enrollment = _enroll(engine, "wf-split", "contact-1", now)
        assigned = enrollment.split_assignments["split"]

        # A different random source must not change a recorded decision
        step = workflow.get_step("split")
        for seed in range(5):
            executor = StepGraphExecutor(
                EnrollmentStore(tmp_path / "other"), RetryPolicy(), rng=random.Random(seed)
            )
            stored = engine.get_enrollment(enrollment.id)
            assert executor._split_branch(step, stored).id == assigned


class TestLoopGuard:
    def test_go_to_cycle_fails_enrollment(self, engine, crm, now):
        workflow = build_workflow([
            tag_step("tag", "loop-a"),
            goto_step("loop-a", "loop-b"),
            goto_step("loop-b", "loop-a"),
        ], workflow_id="wf-cycle")
        save_active(engine, workflow)

        result = engine.enroll("wf-cycle", "contact-1", now=now)

        assert result.enrollment.status == EnrollmentStatus.FAILED
        assert result.enrollment.failure_reason == FailureReason.GRAPH_CYCLE_SUSPECTED
        assert crm.count("add_tags") == 1

    def test_go_to_back_through_a_wait_is_not_a_cycle(self, engine, crm, now):
        workflow = build_workflow([
            email_step("email", "wait"),
            wait_step("wait", "again", duration=1, unit="days"),
            goto_step("again", "email"),
        ], workflow_id="wf-drip")
        save_active(engine, workflow)

        enrollment = _enroll(engine, "wf-drip", "contact-1", now)
        for day in range(1, 4):
            engine.tick(now + timedelta(days=day))

        assert crm.count("send_email") == 4
        assert engine.get_enrollment(enrollment.id).status == EnrollmentStatus.ACTIVE


class TestRetries:
    def test_transient_failure_is_retried_with_backoff(self, engine, crm, now):
        crm.failures["send_email"] = [TransientDispatchError("rate limited")]
        workflow = build_workflow([email_step("email", "end"), end_step("end")], workflow_id="wf-retry")
        save_active(engine, workflow)

        enrollment = _enroll(engine, "wf-retry", "contact-1", now)
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.retry_count == 1
        assert enrollment.next_step_at == now + timedelta(seconds=60)

        engine.tick(now + timedelta(seconds=60))

        done = engine.get_enrollment(enrollment.id)
        assert done.status == EnrollmentStatus.COMPLETED
        keys = {call["idempotency_key"] for call in crm.calls_to("send_email")}
        assert len(keys) == 1

    def test_retries_exhausted(self, engine, crm, now):
        crm.failures["send_email"] = [TimeoutError("provider timed out") for _ in range(3)]
        workflow = build_workflow([email_step("email", "end"), end_step("end")], workflow_id="wf-retry")
        save_active(engine, workflow)

        enrollment = _enroll(engine, "wf-retry", "contact-1", now)
        engine.tick(now + timedelta(seconds=60))
        engine.tick(now + timedelta(seconds=60 + 120))

        failed = engine.get_enrollment(enrollment.id)
        assert crm.count("send_email") == 3
        assert failed.status == EnrollmentStatus.FAILED
        assert failed.failure_reason == FailureReason.RETRIES_EXHAUSTED

    def test_permanent_failure_fails_immediately(self, engine, crm, now):
        crm.failures["send_email"] = [PermanentDispatchError("mailbox does not exist")]
        workflow = build_workflow([email_step("email", "end"), end_step("end")], workflow_id="wf-retry")
        save_active(engine, workflow)

        result = engine.enroll("wf-retry", "contact-1", now=now)

        assert result.enrollment.status == EnrollmentStatus.FAILED
        assert result.enrollment.failure_reason == FailureReason.DISPATCH_FAILED
        assert result.enrollment.last_error == "mailbox does not exist"

    def test_unknown_errors_are_classified_by_message(self, engine, crm, now):
        crm.failures["send_email"] = [RuntimeError("HTTP 503 from provider")]
        workflow = build_workflow([email_step("email", "end"), end_step("end")], workflow_id="wf-retry")
        save_active(engine, workflow)

        result = engine.enroll("wf-retry", "contact-1", now=now)
        assert result.enrollment.status == EnrollmentStatus.ACTIVE
        assert result.enrollment.retry_count == 1


class TestExecutorDirect:
    @pytest.fixture
    def harness(self, tmp_path, crm):
        store = EnrollmentStore(tmp_path)
        control = ControlRequestStore(tmp_path)
        dispatcher = ActionDispatcher(crm.collaborators(), timeout_seconds=5)
        executor = StepGraphExecutor(store, RetryPolicy(), control=control)
        yield store, control, dispatcher, executor
        dispatcher.close()

    def _context(self, workflow, dispatcher, crm, now, subject_id="contact-1"):
        enrollment = Enrollment(
            workflow_id=workflow.id,
            subject_id=subject_id,
            current_step_id=workflow.entry_step_id,
            enrolled_at=now,
            updated_at=now,
        )
        return ExecutionContext(
            workflow=workflow,
            enrollment=enrollment,
            record=crm.get_record("default", subject_id),
            dispatcher=dispatcher,
            now=now,
        )

    def test_dangling_reference_at_runtime_is_a_configuration_error(self, harness, crm, now):
        store, _, dispatcher, executor = harness
        workflow = build_workflow([tag_step("tag", "ghost")])

        result = executor.run(self._context(workflow, dispatcher, crm, now))

        assert result.outcome == PassOutcome.FAILED
        assert result.enrollment.failure_reason == FailureReason.CONFIGURATION_ERROR
        assert store.get(result.enrollment.id).status == EnrollmentStatus.FAILED

    def test_missing_subject(self, harness, crm, now):
        _, _, dispatcher, executor = harness
        ctx = self._context(nurture_workflow(), dispatcher, crm, now, subject_id="ghost")

        result = executor.run(ctx)

        assert result.enrollment.failure_reason == FailureReason.SUBJECT_NOT_FOUND
        assert crm.calls == []

    def test_exit_request_applied_at_step_boundary(self, harness, crm, now):
        store, control, dispatcher, executor = harness
        workflow = build_workflow([
            tag_step("tag", "email"),
            email_step("email", "end"),
            end_step("end"),
        ])
        ctx = self._context(workflow, dispatcher, crm, now)
        control.put(ctx.enrollment.id, "exit", "Unsubscribed")

        result = executor.run(ctx)

        assert result.outcome == PassOutcome.ADVANCED
        assert result.steps_executed == ["tag"]
        assert crm.count("send_email") == 0
        stored = store.get(ctx.enrollment.id)
        assert stored.status == EnrollmentStatus.EXITED
        assert stored.exit_reason == "Unsubscribed"

    def test_graph_exhausted_completes(self, harness, crm, now):
        _, _, dispatcher, executor = harness
        workflow = build_workflow([tag_step("tag")])

        result = executor.run(self._context(workflow, dispatcher, crm, now))

        assert result.outcome == PassOutcome.COMPLETED
        assert result.enrollment.current_step_id is None

    def test_action_steps_do_not_count_toward_the_loop_guard(self, harness, crm, now):
        store, control, dispatcher, _ = harness
        executor = StepGraphExecutor(store, RetryPolicy(), control=control,
                                     loop_guard_multiplier=0, loop_guard_min_hops=1)
        straight = build_workflow([
            tag_step("t1", "t2"),
            tag_step("t2", "t3"),
            tag_step("t3", "jump"),
            goto_step("jump", "end"),
            end_step("end"),
        ])
        cycle = build_workflow([goto_step("a", "b"), goto_step("b", "a")])

        assert executor.run(self._context(straight, dispatcher, crm, now)).outcome == PassOutcome.COMPLETED
        failed = executor.run(self._context(cycle, dispatcher, crm, now))
        assert failed.enrollment.failure_reason == FailureReason.GRAPH_CYCLE_SUSPECTED

    def test_lost_lease_stops_before_the_next_step(self, harness, crm, now):
        store, _, dispatcher, executor = harness
        ctx = self._context(nurture_workflow(), dispatcher, crm, now)
        ctx.keep_alive = lambda: False

        result = executor.run(ctx)

        assert result.outcome == PassOutcome.LEASE_LOST
        assert result.steps_executed == []
        assert crm.calls == []
        assert store.get(ctx.enrollment.id) is None

    def test_lease_lost_during_dispatch_is_not_recorded(self, harness, crm, now):
        store, _, dispatcher, executor = harness
        ctx = self._context(nurture_workflow(), dispatcher, crm, now)
        ctx.keep_alive = lambda: crm.count("add_tags") == 0

        result = executor.run(ctx)

        assert result.outcome == PassOutcome.LEASE_LOST
        assert crm.count("add_tags") == 1
        assert ctx.enrollment.step_history == []
        assert store.get(ctx.enrollment.id) is None
