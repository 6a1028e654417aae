"""Retry/failure summary artifact written after a per-student pass."""

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone

from scoresync.core.protocols import IFileStore
from scoresync.models.workflow import FailedUpdate, RetryLedger

SUMMARY_NOTE = 'Unless marked "UPDATE FAILED", the student\'s score was successfully updated but took multiple attempts.'
SUMMARY_HEADER = ["UserID", "AverageScore", "Attempts", "Status", "Error"]
FAILED_STATUS = "UPDATE FAILED"


def needs_summary(ledger: RetryLedger, failures: list[FailedUpdate]) -> bool:
    return bool(failures) or bool(ledger.retried())


def render_summary(ledger: RetryLedger, failures: list[FailedUpdate]) -> str:
    """CSV text: a note line, the header, then one row per retried or failed student."""
    failed = {f.student_id: f for f in failures}
    retried = ledger.retried()
    student_ids = list(retried) + [sid for sid in failed if sid not in retried]

    buf = io.StringIO()
    buf.write(SUMMARY_NOTE + "\n")
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(SUMMARY_HEADER)
    for student_id in student_ids:
        failure = failed.get(student_id)
        attempts = ledger.attempts.get(student_id, failure.attempts if failure else "")
        writer.writerow([
            student_id,
            failure.average if failure else "",
            attempts,
            FAILED_STATUS if failure else "",
            failure.error if failure else "",
        ])
    return buf.getvalue()


def summary_path(course_id: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    return f"summaries/{course_id}/{stamp}.csv"


def write_summary(
    store: IFileStore,
    course_id: str,
    ledger: RetryLedger,
    failures: list[FailedUpdate],
    now: datetime | None = None,
) -> str:
    """Write the summary CSV and return the store's location for it."""
    data = render_summary(ledger, failures).encode("utf-8")
    return store.write(summary_path(course_id, now), data, content_type="text/csv")
