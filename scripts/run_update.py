"""Run the score update flow for one course against the configured Canvas instance.

Usage:
    python scripts/run_update.py 12345 --yes
    SCORESYNC_CANVAS_API_TOKEN=... python scripts/run_update.py 12345 --no-override
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from scoresync.core.config import AppSettings
from scoresync.core.exceptions import RunInProgressError, ValidationError
from scoresync.core.logging import configure_logging
from scoresync.gradebook.canvas_client import CanvasGradebookClient
from scoresync.models.workflow import RunResult, WorkflowState
from scoresync.orchestrator.approval import StaticApproval
from scoresync.orchestrator.update_flow import UpdateFlow
from scoresync.persistence import create_persistence


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recompute and write back aggregate scores for a course")
    parser.add_argument("course_id", help="Canvas course id")
    parser.add_argument("--yes", action="store_true", help="Create missing setup objects and export summaries without asking")
    parser.add_argument("--no-override", action="store_true", help="Skip final grade override writes")
    parser.add_argument("--log-level", default=None, help="Overrides SCORESYNC_LOG_LEVEL")
    return parser


def print_result(result: RunResult) -> None:
    print(f"Course {result.course_id}: {result.state}")
    if result.state == WorkflowState.ERROR:
        print(f"  {result.error_message or result.error}")
        return
    print(f"  Updates: {result.number_of_updates} ({result.update_mode or 'none'})")
    if result.retries:
        print(f"  Retried: {len(result.retries)} students")
    if result.failures:
        print(f"  Failed: {', '.join(f.student_id for f in result.failures)}")
    if result.summary_location:
        print(f"  Summary: {result.summary_location}")


async def run(args: argparse.Namespace) -> int:
    settings = AppSettings()
    configure_logging(args.log_level or settings.log_level)

    workflow = settings.workflow
    if args.no_override:
        workflow = workflow.model_copy(update={"enable_override": False})
    _, run_lock, artifact_store = create_persistence(settings)

    async with CanvasGradebookClient(settings.canvas, assignment_name=workflow.assignment_name) as client:
        flow = UpdateFlow(
            config=workflow,
            client=client,
            approval=StaticApproval(args.yes or workflow.auto_approve_setup),
            artifact_store=artifact_store,
            run_lock=run_lock,
        )
        try:
            result = await flow.run(args.course_id)
        except (RunInProgressError, ValidationError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2

    print_result(result)
    return 0 if result.state == WorkflowState.COMPLETE else 1


def main() -> None:
    args = build_parser().parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
