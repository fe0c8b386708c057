import os
import sys
import time
from typing import Any, Dict, Optional, TextIO

from nextcloud_sync.jobs.base import ProgressiveJob
from nextcloud_sync.runtime_logger import emit


CRON_MAX_DURATION_SECONDS = float(os.getenv("CRON_MAX_DURATION_SECONDS", "3"))
BATCH_TIME_LIMIT_SECONDS = float(os.getenv("BATCH_TIME_LIMIT_SECONDS", "0.5"))


def run_cron(job: ProgressiveJob, max_duration_seconds: float = CRON_MAX_DURATION_SECONDS) -> Dict[str, Any]:
    """Runs the job until it completes or the time budget is used up.

    Errors are logged and reported in the returned summary, never raised.
    """
    try:
        estimate_before = job.estimate()
    except Exception as exc:
        emit("ERROR", "CRON", f"Failed to estimate sync jobs: error={exc}")
        return {"status": "estimate_failed", "error": str(exc)}

    if estimate_before is None:
        return {"status": "skipped"}

    t0 = time.monotonic()
    progress = 0
    steps = 0
    time_elapsed = 0.0
    estimate_after: Optional[int] = None
    iterator = job.run()
    try:
        for increment in iterator:
            steps += 1
            progress += increment
            time_elapsed = time.monotonic() - t0
            if time_elapsed >= max_duration_seconds:
                estimate_after = job.estimate()
                break
    except Exception as exc:
        time_failed = time.monotonic() - t0 - time_elapsed
        emit(
            "WARN",
            "CRON",
            f"Sync job step failed: step={steps + 1} success_seconds={time_elapsed:.3f} "
            f"failure_seconds={time_failed:.3f} error={exc}",
        )
        return {
            "status": "failed",
            "estimate_before": estimate_before,
            "progress": progress,
            "steps": steps,
            "error": str(exc),
        }
    finally:
        _close(iterator)

    if estimate_after is None:
        emit(
            "INFO",
            "CRON",
            f"Sync jobs completed: estimate_before={estimate_before} progress={progress} "
            f"duration_seconds={time_elapsed:.3f}",
        )
        status = "completed"
    else:
        emit(
            "INFO",
            "CRON",
            f"Sync jobs did not complete in the available time: estimate_before={estimate_before} "
            f"estimate_after={estimate_after} progress={progress} duration_seconds={time_elapsed:.3f}",
        )
        status = "partial"
    return {
        "status": status,
        "estimate_before": estimate_before,
        "estimate_after": estimate_after,
        "progress": progress,
        "steps": steps,
        "duration_seconds": round(time_elapsed, 3),
    }


def _close(iterator):
    close = getattr(iterator, "close", None)
    if close is not None:
        close()


def new_batch_context() -> Dict[str, Any]:
    return {"sandbox": {"total": None, "processed": 0}, "finished": 0, "message": ""}


def process_batch(
    job: ProgressiveJob,
    context: Dict[str, Any],
    time_limit_seconds: float = BATCH_TIME_LIMIT_SECONDS,
) -> Dict[str, Any]:
    """One step of a multi-request batch. The caller keeps `context` between steps."""
    sandbox = context.setdefault("sandbox", {})
    sandbox.setdefault("total", None)
    sandbox.setdefault("processed", 0)

    if sandbox["total"] is None:
        # First step.
        sandbox["total"] = job.estimate()
        if sandbox["total"] is None:
            context["finished"] = 1
            context["message"] = ""
            return context

    t_limit = time.monotonic() + time_limit_seconds
    pending = None
    iterator = job.run()
    try:
        for increment in iterator:
            sandbox["processed"] += increment
            if time.monotonic() > t_limit:
                pending = job.estimate()
                if pending:
                    # Continue with another request.
                    break
                pending = None
    finally:
        _close(iterator)

    processed = sandbox["processed"]
    if pending is None:
        context["finished"] = 1
        context["message"] = f"{processed} / {processed}"
        emit("INFO", "BATCH", f"Sync batch finished: processed={processed} initial_total={sandbox['total']}")
        return context

    total_now = processed + pending
    context["finished"] = processed / total_now
    if total_now == sandbox["total"]:
        context["message"] = f"{processed} / {total_now}"
    else:
        # The initial estimate was off.
        context["message"] = f"{processed} / {total_now} ({sandbox['total']})"
    return context


def run_to_completion(job: ProgressiveJob, out: TextIO = None) -> Optional[int]:
    """Runs the job in this process until nothing is pending. Errors propagate."""
    out = out or sys.stdout
    total = job.estimate()
    if total is None:
        print("Nextcloud is not available, nothing to do.", file=out)
        return None
    print(f"Pending: {total}.", file=out)
    for _ in job.run():
        pass
    remaining = job.estimate() or 0
    print(f"Remaining: {remaining}.", file=out)
    return remaining
