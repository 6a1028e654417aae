"""Tests for UpdateDispatcher mode selection, retries, overrides and bulk submission."""

from __future__ import annotations

import pytest

from scoresync.core.exceptions import ValidationError
from scoresync.models.workflow import StudentUpdate, UpdateMode, WorkflowContext
from scoresync.orchestrator.dispatcher import EXPORT_QUESTION, UpdateDispatcher, select_mode
from tests.fakes import (
    ASSIGNMENT_ID,
    COURSE_ID,
    CRITERION_ID,
    METRIC_ID,
    LoggingProgressSink,
    MemoryFileStore,
    ScriptedApproval,
    fast_config,
    seeded_gradebook,
)


def updates_for(*student_ids: str, average: float = 3.5) -> list[StudentUpdate]:
    return [StudentUpdate(student_id=sid, new_average=average) for sid in student_ids]


def context_with(updates: list[StudentUpdate], **fields) -> WorkflowContext:
    values = {
        "course_id": COURSE_ID,
        "metric_definition_id": METRIC_ID,
        "assignment_id": ASSIGNMENT_ID,
        "rubric_criterion_id": CRITERION_ID,
        "averages": updates,
        "number_of_updates": len(updates),
    }
    values.update(fields)
    return WorkflowContext(**values)


def make_dispatcher(gradebook, *, approval=None, store=None, **config):
    progress = LoggingProgressSink()
    dispatcher = UpdateDispatcher(
        config=fast_config(**config),
        client=gradebook,
        progress=progress,
        approval=approval or ScriptedApproval(),
        artifact_store=store,
    )
    return dispatcher, progress


class TestSelectMode:
    def test_below_threshold_is_per_student(self):
        assert select_mode(24, 25) == UpdateMode.PER_STUDENT

    def test_at_threshold_is_bulk(self):
        assert select_mode(25, 25) == UpdateMode.BULK

    def test_choose_mode_keeps_existing_mode(self):
        dispatcher, _ = make_dispatcher(seeded_gradebook())
        ctx = context_with(updates_for(*[str(i) for i in range(30)]), update_mode=UpdateMode.PER_STUDENT)
        assert dispatcher.choose_mode(ctx) == UpdateMode.PER_STUDENT

    def test_override_only_forces_per_student(self):
        dispatcher, _ = make_dispatcher(seeded_gradebook(), enable_score_updates=False, enable_override=True)
        ctx = context_with(updates_for(*[str(i) for i in range(30)]))
        assert dispatcher.choose_mode(ctx) == UpdateMode.PER_STUDENT


class TestPerStudent:
    @pytest.mark.asyncio
    async def test_writes_every_update_once(self):
        gradebook = seeded_gradebook()
        dispatcher, progress = make_dispatcher(gradebook)
        report = await dispatcher.run_per_student(context_with(updates_for("1", "2", "3")))

        assert [w[0] for w in gradebook.score_writes] == ["1", "2", "3"]
        assert all(w[1] == CRITERION_ID for w in gradebook.score_writes)
        assert report.failures == []
        assert report.retried == {}
        assert progress.current == 'Updating "Current Score": 3 of 3 students processed'

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_within_first_pass(self):
        gradebook = seeded_gradebook()
        gradebook.write_failures = {"2": 2}
        dispatcher, _ = make_dispatcher(gradebook)
        report = await dispatcher.run_per_student(context_with(updates_for("1", "2")))

        assert report.failures == []
        assert report.retried == {"2": 3}

    @pytest.mark.asyncio
    async def test_deferred_pass_recovers_and_counts_cumulatively(self):
        gradebook = seeded_gradebook()
        gradebook.write_failures = {"1": 4}
        dispatcher, _ = make_dispatcher(gradebook)
        report = await dispatcher.run_per_student(context_with(updates_for("1", "2")))

        assert report.failures == []
        assert report.ledger.attempts == {"1": 5, "2": 1}
        # deferred write lands after the other students
        assert [w[0] for w in gradebook.score_writes] == ["2", "1"]

    @pytest.mark.asyncio
    async def test_permanent_failure_is_reported_not_raised(self):
        gradebook = seeded_gradebook()
        gradebook.write_failures = {"1": 100}
        dispatcher, _ = make_dispatcher(gradebook)
        report = await dispatcher.run_per_student(context_with(updates_for("1", "2", average=2.25)))

        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.student_id == "1"
        assert failure.attempts == 6
        assert failure.average == 2.25
        assert "HTTP 500" in failure.error
        assert [w[0] for w in gradebook.score_writes] == ["2"]

    @pytest.mark.asyncio
    async def test_missing_criterion_id_raises(self):
        dispatcher, _ = make_dispatcher(seeded_gradebook())
        with pytest.raises(ValidationError):
            await dispatcher.run_per_student(context_with(updates_for("1"), rubric_criterion_id=None))

    @pytest.mark.asyncio
    async def test_override_written_after_score(self):
        gradebook = seeded_gradebook()
        gradebook.add_student(COURSE_ID, "1", {"10": 3.5})
        dispatcher, _ = make_dispatcher(gradebook, enable_override=True)
        report = await dispatcher.run_per_student(context_with(updates_for("1")))

        assert gradebook.override_writes == [("1", 87.5)]
        assert report.override_failures == 0

    @pytest.mark.asyncio
    async def test_override_failure_does_not_fail_student(self):
        gradebook = seeded_gradebook()
        gradebook.add_student(COURSE_ID, "1", {"10": 3.5})
        gradebook.override_write_failures = {"1"}
        dispatcher, _ = make_dispatcher(gradebook, enable_override=True)
        report = await dispatcher.run_per_student(context_with(updates_for("1")))

        assert report.failures == []
        assert report.override_failures == 1
        assert len(gradebook.score_writes) == 1

    @pytest.mark.asyncio
    async def test_override_only_mode_writes_overrides(self):
        gradebook = seeded_gradebook()
        gradebook.add_student(COURSE_ID, "1", {"10": 3.0})
        dispatcher, _ = make_dispatcher(gradebook, enable_score_updates=False, enable_override=True)
        ctx = context_with(updates_for("1", average=3.0), assignment_id=None, rubric_criterion_id=None)
        report = await dispatcher.run_per_student(ctx)

        assert gradebook.score_writes == []
        assert gradebook.override_writes == [("1", 75.0)]
        assert report.failures == []

    @pytest.mark.asyncio
    async def test_missing_enrollment_fails_override_write(self):
        dispatcher, _ = make_dispatcher(seeded_gradebook(), enable_override=True)
        with pytest.raises(ValidationError):
            await dispatcher.write_override(COURSE_ID, StudentUpdate(student_id="404", new_average=3.0))


class TestSummary:
    @pytest.mark.asyncio
    async def test_summary_written_when_accepted(self):
        gradebook = seeded_gradebook()
        gradebook.write_failures = {"1": 100}
        store = MemoryFileStore()
        approval = ScriptedApproval([True])
        dispatcher, _ = make_dispatcher(gradebook, approval=approval, store=store)
        report = await dispatcher.run_per_student(context_with(updates_for("1")))

        location = await dispatcher.offer_summary(COURSE_ID, report)

        assert approval.questions == [EXPORT_QUESTION]
        assert location.startswith(f"summaries/{COURSE_ID}/")
        assert b"UPDATE FAILED" in store.read(location)

    @pytest.mark.asyncio
    async def test_summary_not_offered_without_retries(self):
        approval = ScriptedApproval()
        dispatcher, _ = make_dispatcher(seeded_gradebook(), approval=approval, store=MemoryFileStore())
        report = await dispatcher.run_per_student(context_with(updates_for("1")))

        assert await dispatcher.offer_summary(COURSE_ID, report) is None
        assert approval.questions == []

    @pytest.mark.asyncio
    async def test_declined_summary_writes_nothing(self):
        gradebook = seeded_gradebook()
        gradebook.write_failures = {"1": 1}
        store = MemoryFileStore()
        dispatcher, _ = make_dispatcher(gradebook, approval=ScriptedApproval([False]), store=store)
        report = await dispatcher.run_per_student(context_with(updates_for("1")))

        assert await dispatcher.offer_summary(COURSE_ID, report) is None
        assert store.list_files("") == []


class TestBulk:
    @pytest.mark.asyncio
    async def test_submits_single_job(self):
        gradebook = seeded_gradebook()
        dispatcher, _ = make_dispatcher(gradebook)
        updates = updates_for(*[str(i) for i in range(30)])
        submission = await dispatcher.submit_bulk(context_with(updates))

        assert submission.job_id
        assert len(gradebook.bulk_requests) == 1
        assert len(gradebook.bulk_requests[0]) == 30
        assert gradebook.score_writes == []

    @pytest.mark.asyncio
    async def test_bulk_fires_override_writes(self):
        gradebook = seeded_gradebook({"1": {"10": 3.5}, "2": {"10": 3.5}})
        gradebook.override_write_failures = {"2"}
        dispatcher, _ = make_dispatcher(gradebook, enable_override=True)
        submission = await dispatcher.submit_bulk(context_with(updates_for("1", "2")))

        assert gradebook.override_writes == [("1", 87.5)]
        assert submission.override_failures == 1
