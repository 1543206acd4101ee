"""
Sync run ledger.

One append-only row per sync invocation: written as ``running`` when the run
starts and moved to ``success`` or ``failed`` when it ends.
"""

import json
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pnl_sync.core.logging import get_logger
from pnl_sync.core.time import to_db, to_utc, utcnow
from pnl_sync.db.models import SyncRun, SyncRunStatus, SyncRunType
from pnl_sync.db.session import session_scope

logger = get_logger(__name__)

DEFAULT_STATUS_LIMIT = 20


def start_sync_run(
    session_factory: sessionmaker[Session],
    run_type: SyncRunType,
    request_id: str,
    marketplace_id: Optional[str] = None,
    days: Optional[int] = None,
    dry_run: bool = False,
    limits: Optional[dict[str, Any]] = None,
    started_at: Optional[datetime] = None,
) -> SyncRun:
    """
    Record the start of a run.

    Returns:
        The ``running`` ledger row (detached)
    """
    run = SyncRun(
        run_type=run_type.value,
        status=SyncRunStatus.RUNNING.value,
        request_id=request_id,
        marketplace_id=marketplace_id,
        days=days,
        dry_run=dry_run,
        limits=limits,
        started_at=to_db(started_at or utcnow()),
    )

    with session_scope(session_factory) as session:
        session.add(run)

    return run


def finish_sync_run(
    session_factory: sessionmaker[Session],
    run_id: str,
    status: SyncRunStatus,
    warnings: Sequence[str] = (),
    error_message: Optional[str] = None,
    marketplace_id: Optional[str] = None,
    finished_at: Optional[datetime] = None,
) -> Optional[SyncRun]:
    """
    Record the end of a run.

    Warnings are stored as a JSON list only when there are any.

    Returns:
        The updated row, or None when the run id is unknown
    """
    finished = finished_at or utcnow()

    with session_scope(session_factory) as session:
        run = session.get(SyncRun, run_id)
        if run is None:
            logger.warning("Sync run not found in ledger", extra={"run_id": run_id})
            return None

        run.status = status.value
        run.finished_at = to_db(finished)
        run.duration_ms = max(
            int((to_utc(finished) - to_utc(run.started_at)).total_seconds() * 1000), 0
        )
        run.warnings_json = json.dumps(list(warnings)) if warnings else None
        run.error_message = error_message
        if marketplace_id:
            run.marketplace_id = marketplace_id

    return run


def decode_warnings(warnings_json: Optional[str]) -> list[str]:
    """Decode stored warnings; malformed or non-list JSON yields an empty list."""
    if not warnings_json:
        return []
    try:
        decoded = json.loads(warnings_json)
    except ValueError:
        return []
    if not isinstance(decoded, list):
        return []
    return [str(warning) for warning in decoded]


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return to_utc(value).isoformat() if value is not None else None


def serialize_sync_run(run: SyncRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "run_type": run.run_type,
        "status": run.status,
        "request_id": run.request_id,
        "marketplace_id": run.marketplace_id,
        "days": run.days,
        "dry_run": run.dry_run,
        "limits": run.limits,
        "warnings": decode_warnings(run.warnings_json),
        "error_message": run.error_message,
        "started_at": _isoformat(run.started_at),
        "finished_at": _isoformat(run.finished_at),
        "duration_ms": run.duration_ms,
    }


def get_sync_status(session: Session, limit: int = DEFAULT_STATUS_LIMIT) -> dict[str, Any]:
    """
    Recent runs plus the last success and failure times.

    Args:
        session: Open session
        limit: Number of recent runs

    Returns:
        Dict with ``last_success_at``, ``last_failure_at`` and ``runs``
        (newest first)
    """
    runs = session.scalars(
        select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id).limit(limit)
    ).all()

    last_success = session.scalar(
        select(SyncRun.finished_at)
        .where(SyncRun.status == SyncRunStatus.SUCCESS.value)
        .order_by(SyncRun.finished_at.desc())
        .limit(1)
    )
    last_failure = session.scalar(
        select(SyncRun.finished_at)
        .where(SyncRun.status == SyncRunStatus.FAILED.value)
        .order_by(SyncRun.finished_at.desc())
        .limit(1)
    )

    return {
        "last_success_at": _isoformat(last_success),
        "last_failure_at": _isoformat(last_failure),
        "runs": [serialize_sync_run(run) for run in runs],
    }
