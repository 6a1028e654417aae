"""Score update runs and course grade snapshots."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from scoresync.core.exceptions import RunInProgressError, ValidationError
from scoresync.models.gradebook import CourseGradeSnapshot
from scoresync.models.workflow import RunResult
from scoresync.orchestrator.approval import StaticApproval
from scoresync.orchestrator.update_flow import UpdateFlow

router = APIRouter(tags=["updates"])


@router.post("/courses/{course_id}/score-updates", response_model=RunResult)
async def run_score_update(course_id: str, request: Request) -> RunResult:
    """Run the update flow for one course and return its final report."""
    state = request.app.state
    workflow = state.settings.workflow
    flow = UpdateFlow(
        config=workflow,
        client=state.client,
        approval=StaticApproval(workflow.auto_approve_setup),
        artifact_store=state.artifact_store,
        run_lock=state.run_lock,
    )
    try:
        return await flow.run(course_id)
    except RunInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/grade-snapshots")
async def grade_snapshots(
    request: Request,
    course_id: list[str] = Query(...),
    student_id: str = "self",
) -> dict[str, list[CourseGradeSnapshot]]:
    """Course grades for display. Courses that could not be fetched are omitted."""
    found = await request.app.state.snapshots.snapshots(course_id, student_id)
    return {"snapshots": list(found.values())}
