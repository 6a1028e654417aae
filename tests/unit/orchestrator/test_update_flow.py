"""End-to-end runs of UpdateFlow against the in-memory gradebook."""

from __future__ import annotations

import pytest

from scoresync.core.exceptions import RunInProgressError, ValidationError
from scoresync.models.gradebook import JobStatus
from scoresync.models.workflow import UpdateMode, WorkflowState
from scoresync.orchestrator.update_flow import UpdateFlow
from scoresync.persistence.lock import CacheRunLock
from tests.fakes import (
    COURSE_ID,
    METRIC_ID,
    FakeClock,
    FakeSleep,
    LoggingProgressSink,
    MemoryCacheBackend,
    MemoryFileStore,
    ScriptedApproval,
    fast_config,
    seeded_gradebook,
)

S = WorkflowState


def course_with_changes(total: int, changed: int):
    """``total`` students averaging 3.5; the first ``changed`` have a stale stored metric."""
    students = {}
    for i in range(total):
        stored = 3.0 if i < changed else 3.5
        students[f"s{i:02d}"] = {"10": 3.0, "11": 4.0, METRIC_ID: stored}
    return seeded_gradebook(students)


def make_flow(gradebook, *, approval=None, store=None, run_lock=None, events=None, **config):
    clock = FakeClock()
    progress = LoggingProgressSink(clock=clock)
    flow = UpdateFlow(
        config=fast_config(**config),
        client=gradebook,
        approval=approval or ScriptedApproval(),
        progress=progress,
        artifact_store=store,
        run_lock=run_lock,
        sleep=FakeSleep(clock),
        clock=clock,
        subscribers=[events.append] if events is not None else (),
    )
    return flow, progress


class TestPerStudentRun:
    @pytest.mark.asyncio
    async def test_ten_changes_out_of_thirty(self):
        gradebook = course_with_changes(30, 10)
        flow, progress = make_flow(gradebook)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert result.update_mode == UpdateMode.PER_STUDENT
        assert result.number_of_updates == 10
        assert {u.student_id for u in result.averages} == {f"s{i:02d}" for i in range(10)}
        assert all(u.new_average == 3.5 for u in result.averages)
        assert len(gradebook.score_writes) == 10
        assert result.score_verification.matched
        assert result.override_verification.skipped
        assert result.history == [
            S.IDLE, S.CHECKING_SETUP, S.CALCULATING, S.UPDATING_GRADES,
            S.VERIFYING_SCORES, S.VERIFYING_OVERRIDES, S.COMPLETE, S.IDLE,
        ]
        assert progress.current.startswith("10 student scores updated successfully!")

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing_to_do(self):
        gradebook = course_with_changes(30, 10)
        flow, _ = make_flow(gradebook)
        await flow.run(COURSE_ID)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert result.zero_updates
        assert len(gradebook.score_writes) == 10

    @pytest.mark.asyncio
    async def test_retries_and_failures_are_reported(self):
        gradebook = course_with_changes(5, 3)
        gradebook.write_failures = {"s00": 1, "s01": 100}
        store = MemoryFileStore()
        flow, _ = make_flow(gradebook, store=store)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert result.retries == {"s00": 2, "s01": 6}
        assert [f.student_id for f in result.failures] == ["s01"]
        assert result.summary_location in store.list_files(f"summaries/{COURSE_ID}/")
        assert not result.score_verification.matched

    @pytest.mark.asyncio
    async def test_overrides_written_and_verified(self):
        gradebook = course_with_changes(3, 1)
        flow, _ = make_flow(gradebook, enable_override=True)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        # no stored overrides, so every student needs one
        assert result.number_of_updates == 3
        assert sorted(gradebook.override_writes) == [("s00", 87.5), ("s01", 87.5), ("s02", 87.5)]
        assert result.override_verification.matched
        assert COURSE_ID in gradebook.override_enabled


class TestZeroUpdates:
    @pytest.mark.asyncio
    async def test_no_changes_goes_straight_to_complete(self):
        gradebook = course_with_changes(4, 0)
        flow, progress = make_flow(gradebook)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert result.zero_updates
        assert result.number_of_updates == 0
        assert result.history == [S.IDLE, S.CHECKING_SETUP, S.CALCULATING, S.COMPLETE, S.IDLE]
        assert gradebook.score_writes == []
        assert progress.current == 'No changes to "Current Score" found.'


class TestBulkRun:
    @pytest.mark.asyncio
    async def test_threshold_switches_to_bulk(self):
        gradebook = course_with_changes(30, 25)
        flow, _ = make_flow(gradebook)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert result.update_mode == UpdateMode.BULK
        assert S.POLLING_BULK_JOB in result.history
        assert len(gradebook.bulk_requests) == 1
        assert gradebook.score_writes == []
        assert result.score_verification.matched

    @pytest.mark.asyncio
    async def test_below_threshold_stays_per_student(self):
        gradebook = course_with_changes(30, 24)
        flow, _ = make_flow(gradebook)
        result = await flow.run(COURSE_ID)
        assert result.update_mode == UpdateMode.PER_STUDENT
        assert gradebook.bulk_requests == []

    @pytest.mark.asyncio
    async def test_failed_job_ends_in_error_with_averages_kept(self):
        gradebook = course_with_changes(30, 30)
        gradebook.job_statuses = [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.FAILED]
        flow, progress = make_flow(gradebook)

        result = await flow.run(COURSE_ID)

        assert result.state == S.ERROR
        assert result.history[-3:] == [S.POLLING_BULK_JOB, S.ERROR, S.IDLE]
        assert "failed" in result.error
        assert len(result.averages) == 30
        assert progress.current.startswith("Error: Bulk update job")

    @pytest.mark.asyncio
    async def test_job_timeout_ends_in_error(self):
        gradebook = course_with_changes(30, 30)
        gradebook.job_statuses = [JobStatus.RUNNING] * 50
        flow, _ = make_flow(gradebook, bulk_timeout=20.0)

        result = await flow.run(COURSE_ID)

        assert result.state == S.ERROR
        assert result.error_message == "The operation took too long and timed out. Please try again."


class TestSetupCreation:
    @pytest.mark.asyncio
    async def test_missing_setup_is_created_then_scores_written(self):
        gradebook = seeded_gradebook({"s1": {"10": 3.0, "11": 4.0}}, with_setup=False)
        approval = ScriptedApproval()
        flow, _ = make_flow(gradebook, approval=approval)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert len(approval.questions) == 3
        assert result.history[:8] == [
            S.IDLE,
            S.CHECKING_SETUP, S.CREATING_METRIC_DEFINITION,
            S.CHECKING_SETUP, S.CREATING_PLACEHOLDER_ASSIGNMENT,
            S.CHECKING_SETUP, S.CREATING_RUBRIC,
            S.CHECKING_SETUP,
        ]
        assert [(w[0], w[2]) for w in gradebook.score_writes] == [("s1", 3.5)]
        assert result.score_verification.matched

    @pytest.mark.asyncio
    async def test_decline_ends_in_error_without_writes(self):
        gradebook = seeded_gradebook({"s1": {"10": 3.0}}, with_setup=False)
        flow, progress = make_flow(gradebook, approval=ScriptedApproval([False]))

        result = await flow.run(COURSE_ID)

        assert result.state == S.ERROR
        assert result.history == [S.IDLE, S.CHECKING_SETUP, S.ERROR, S.IDLE]
        assert result.error_message == "User declined to create missing metric definition."
        assert "create_metric_definition" not in gradebook.calls
        assert progress.current == "Error: User declined to create missing metric definition."


class TestRunGuards:
    @pytest.mark.asyncio
    async def test_empty_course_id_rejected(self):
        flow, _ = make_flow(seeded_gradebook())
        with pytest.raises(ValidationError):
            await flow.run("")

    @pytest.mark.asyncio
    async def test_concurrent_run_refused_before_remote_calls(self):
        gradebook = course_with_changes(3, 1)
        lock = CacheRunLock(MemoryCacheBackend())
        lock.acquire(COURSE_ID)
        flow, _ = make_flow(gradebook, run_lock=CacheRunLock(MemoryCacheBackend()))
        flow_sharing_lock, _ = make_flow(gradebook, run_lock=lock)

        with pytest.raises(RunInProgressError):
            await flow_sharing_lock.run(COURSE_ID)
        assert gradebook.calls == []

        # a lock over a different cache is unaffected
        result = await flow.run(COURSE_ID)
        assert result.state == S.COMPLETE

    @pytest.mark.asyncio
    async def test_lock_released_after_error(self):
        gradebook = seeded_gradebook({"s1": {"10": 3.0}}, with_setup=False)
        cache = MemoryCacheBackend()
        flow, _ = make_flow(gradebook, approval=ScriptedApproval([False]), run_lock=CacheRunLock(cache))

        await flow.run(COURSE_ID)

        assert CacheRunLock(cache).acquire(COURSE_ID)

    @pytest.mark.asyncio
    async def test_subscribers_see_every_transition(self):
        events = []
        flow, _ = make_flow(course_with_changes(3, 0), events=events)
        result = await flow.run(COURSE_ID)
        assert [e.to_state for e in events] == result.history[1:]


class TestHandlerEdges:
    @pytest.mark.asyncio
    async def test_enable_override_failure_is_not_fatal(self):
        gradebook = course_with_changes(3, 1)
        gradebook.fail_enable_override = True
        flow, _ = make_flow(gradebook, enable_override=True)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert COURSE_ID not in gradebook.override_enabled

    @pytest.mark.asyncio
    async def test_setup_pass_budget_exhaustion_ends_in_error(self):
        gradebook = seeded_gradebook({"s1": {"10": 3.0}}, with_setup=False)
        flow, _ = make_flow(gradebook, max_setup_passes=2)

        result = await flow.run(COURSE_ID)

        assert result.state == S.ERROR
        assert "still incomplete after 2 passes" in result.error
        assert result.history.count(S.CHECKING_SETUP) == 3

    @pytest.mark.asyncio
    async def test_override_only_run_skips_score_verification(self):
        gradebook = course_with_changes(3, 0)
        flow, _ = make_flow(gradebook, enable_score_updates=False, enable_override=True)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert gradebook.score_writes == []
        assert len(gradebook.override_writes) == 3
        assert result.score_verification.skipped
        assert result.override_verification.matched


class FailingCompletionSink(LoggingProgressSink):
    def set_text(self, message: str) -> None:
        if "updated successfully" in message:
            raise RuntimeError("progress display closed")
        super().set_text(message)


class TestTerminalHandlerFailure:
    @pytest.mark.asyncio
    async def test_failing_complete_handler_still_returns_to_idle(self):
        gradebook = course_with_changes(3, 1)
        clock = FakeClock()
        cache = MemoryCacheBackend()
        flow = UpdateFlow(
            config=fast_config(),
            client=gradebook,
            approval=ScriptedApproval(),
            progress=FailingCompletionSink(clock=clock),
            run_lock=CacheRunLock(cache),
            sleep=FakeSleep(clock),
            clock=clock,
        )

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert result.history[-2:] == [S.COMPLETE, S.IDLE]
        assert S.ERROR not in result.history
        assert result.error == "progress display closed"
        assert result.number_of_updates == 1
        assert CacheRunLock(cache).acquire(COURSE_ID)


class TestReferenceScenario:
    @pytest.mark.asyncio
    async def test_ten_of_thirty_with_overrides_verifies_first_time(self):
        gradebook = course_with_changes(30, 10)
        for i in range(10, 30):
            gradebook.overrides.setdefault(COURSE_ID, {})[f"s{i:02d}"] = 87.5
        flow, progress = make_flow(gradebook, enable_override=True)

        result = await flow.run(COURSE_ID)

        assert result.state == S.COMPLETE
        assert result.update_mode == UpdateMode.PER_STUDENT
        assert result.number_of_updates == 10
        assert sorted(u.student_id for u in result.averages) == [f"s{i:02d}" for i in range(10)]
        assert len(gradebook.score_writes) == 10
        assert sorted(gradebook.override_writes) == [(f"s{i:02d}", 87.5) for i in range(10)]
        assert result.retries == {}
        assert result.failures == []
        assert result.override_failures == 0
        assert result.score_verification.matched
        assert result.score_verification.attempts == 1
        assert result.override_verification.matched
        assert result.override_verification.attempts == 1
        assert result.summary_location is None
        assert progress.current.startswith("10 student scores updated successfully!")
