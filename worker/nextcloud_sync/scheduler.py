import os
import threading
import time
from datetime import datetime, timezone

from croniter import croniter

from nextcloud_sync.jobs.runner import run_cron
from nextcloud_sync.runtime_logger import emit
from nextcloud_sync.wiring import get_services

SYNC_CRON_EXPR = os.getenv("SYNC_CRON_EXPR", "*/5 * * * *")
SCHEDULER_POLL_SECONDS = int(os.getenv("SCHEDULER_POLL_SECONDS", "30"))
# A failed step leaves the rest for the next run.
_RUN_STATUS_LEVELS = {"failed": "WARN", "estimate_failed": "ERROR"}

_scheduler_status = {
    "running": False,
    "enabled": True,
    "cron_expr": SYNC_CRON_EXPR,
    "next_run_at": None,
    "last_tick": None,
    "last_run": None,
    "last_error": None,
}


def get_scheduler_status():
    return _scheduler_status


def start_scheduler_thread():
    thread = threading.Thread(target=_scheduler_loop, daemon=True)
    thread.start()
    emit("INFO", "SCHEDULER", "Scheduler thread started")


def _scheduler_loop(cron_expr: str = SYNC_CRON_EXPR):
    try:
        next_run_at = _compute_next_run(cron_expr)
    except Exception as exc:
        _disable_invalid_schedule(cron_expr=cron_expr, error_reason=f"invalid_cron_expr: {exc}")
        return
    _scheduler_status["running"] = True
    _scheduler_status["next_run_at"] = next_run_at.isoformat()
    while True:
        _scheduler_status["last_tick"] = datetime.now(timezone.utc).isoformat()
        try:
            next_run_at = _run_due_schedule(cron_expr, next_run_at)
            _scheduler_status["last_error"] = None
        except Exception as exc:
            _scheduler_status["last_error"] = str(exc)
            emit("ERROR", "SCHEDULER", f"Scheduler loop failure: error={exc}")
        time.sleep(SCHEDULER_POLL_SECONDS)


def _run_due_schedule(cron_expr: str, next_run_at: datetime, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    if now < next_run_at:
        return next_run_at
    emit("INFO", "SCHEDULER", f"Scheduled sync triggered: due_at={next_run_at.isoformat()}")
    run_sync_once(trigger="schedule")
    following = _compute_next_run(cron_expr, now)
    _scheduler_status["next_run_at"] = following.isoformat()
    return following


def run_sync_once(trigger: str = "run_now", services=None):
    services = services or get_services()
    started_at = datetime.now(timezone.utc).isoformat()
    summary = run_cron(services.build_job())
    _scheduler_status["last_run"] = {
        "trigger": trigger,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        **summary,
    }
    level = _RUN_STATUS_LEVELS.get(summary.get("status"), "INFO")
    emit(level, "SCHEDULER", f"Sync run finished: trigger={trigger} status={summary.get('status')}")
    return summary


def _disable_invalid_schedule(*, cron_expr, error_reason: str):
    cron_expr = str(cron_expr or "")
    short_error = str(error_reason or "invalid_cron_expr").replace("\n", " ").replace("\r", " ").strip()
    if len(short_error) > 300:
        short_error = short_error[:297] + "..."
    _scheduler_status["running"] = False
    _scheduler_status["enabled"] = False
    _scheduler_status["next_run_at"] = None
    _scheduler_status["last_error"] = short_error
    emit(
        "ERROR",
        "SCHEDULER",
        f"Disabled invalid schedule: cron_expr='{cron_expr}' error={short_error}",
    )


def _compute_next_run(cron_expr, base: datetime | None = None):
    base = base or datetime.now(timezone.utc)
    itr = croniter(cron_expr, base)
    return itr.get_next(datetime)
