"""Secondary effects of ledger operations, persisted with the ledger change and applied after commit.

Audit entries and printer-instance status changes are written as
``outbox_events`` inside the same transaction as the record/stock change.
``dispatch_events`` applies them afterwards, each in its own session. An
event is claimed (``processing``) before its handler runs so two dispatchers
never apply it twice; a failing event is marked ``failed`` and retried by the
next dispatch, it never undoes the ledger change.
"""

import json
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .instances import update_printer_instance
from .logging_config import get_logger, request_source_ctx, trace_id_ctx

logger = get_logger("outbox")

AUDIT_LOG = "audit_log"
PRINTER_INSTANCE_SYNC = "printer_instance_sync"
MAX_ATTEMPTS = 5
RETRYABLE = ("pending", "failed")
_SESSION_KEY = "outbox_event_ids"


def enqueue(db: Session, event_type: str, payload: dict) -> models.OutboxEvent:
    event = models.OutboxEvent(event_type=event_type, payload=payload, status="pending", attempts=0)
    db.add(event)
    db.flush()
    db.info.setdefault(_SESSION_KEY, []).append(event.id)
    return event


def enqueue_audit(
    db: Session,
    action_type: str,
    entity_type: str,
    entity_id: str | None,
    operator: str | None,
    details: dict | None = None,
) -> models.OutboxEvent:
    return enqueue(
        db,
        AUDIT_LOG,
        {
            "action_type": action_type,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operator": operator,
            "details": details or {},
            "trace_id": trace_id_ctx.get(),
            "request_source": request_source_ctx.get(),
            "created_at": datetime.now().isoformat(),
        },
    )


def enqueue_printer_instance_sync(
    db: Session,
    instance_id: str,
    status: str,
    location: str,
    deployed_date: date | None,
) -> models.OutboxEvent:
    return enqueue(
        db,
        PRINTER_INSTANCE_SYNC,
        {
            "instance_id": instance_id,
            "status": status,
            "location": location,
            "deployed_date": deployed_date.isoformat() if deployed_date else None,
        },
    )


def write_audit_log(db: Session, payload: dict) -> None:
    created_at = payload.get("created_at")
    db.add(
        models.OperationLog(
            action_type=payload["action_type"],
            entity_type=payload["entity_type"],
            entity_id=payload.get("entity_id"),
            operator=payload.get("operator"),
            details=json.dumps(payload.get("details") or {}, ensure_ascii=False, default=str),
            trace_id=payload.get("trace_id"),
            request_source=payload.get("request_source"),
            created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(),
        )
    )


def sync_printer_instance(db: Session, payload: dict) -> None:
    deployed = payload.get("deployed_date")
    update_printer_instance(
        db,
        payload["instance_id"],
        {
            "status": payload["status"],
            "location": payload["location"],
            "deployed_date": date.fromisoformat(deployed) if deployed else None,
        },
    )


HANDLERS = {
    AUDIT_LOG: write_audit_log,
    PRINTER_INSTANCE_SYNC: sync_printer_instance,
}


def dispatch_events(session_factory: sessionmaker, event_ids: list[int] | None = None) -> dict[str, int]:
    """Apply pending (and previously failed) events. Returns counts of done/failed events.

    Events claimed by a concurrent dispatcher are skipped and counted in neither.
    """
    with session_factory() as db:
        stmt = (
            select(models.OutboxEvent.id)
            .where(models.OutboxEvent.status.in_(RETRYABLE))
            .where(models.OutboxEvent.attempts < MAX_ATTEMPTS)
            .order_by(models.OutboxEvent.id)
        )
        if event_ids is not None:
            stmt = stmt.where(models.OutboxEvent.id.in_(event_ids))
        ids = list(db.scalars(stmt).all())

    done = failed = 0
    for event_id in ids:
        outcome = _dispatch_one(session_factory, event_id)
        if outcome == "done":
            done += 1
        elif outcome == "failed":
            failed += 1
    return {"done": done, "failed": failed}


def claim_event(session_factory: sessionmaker, event_id: int) -> bool:
    """Move an event to ``processing``; False when another dispatcher got it first."""
    with session_factory() as db:
        result = db.execute(
            update(models.OutboxEvent)
            .where(models.OutboxEvent.id == event_id)
            .where(models.OutboxEvent.status.in_(RETRYABLE))
            .values(status="processing")
        )
        db.commit()
        return result.rowcount == 1


def _dispatch_one(session_factory: sessionmaker, event_id: int) -> str:
    if not claim_event(session_factory, event_id):
        return "skipped"
    with session_factory() as db:
        event = db.get(models.OutboxEvent, event_id)
        event_type = event.event_type
        handler = HANDLERS.get(event_type)
        try:
            if handler is None:
                raise ValueError(f"unknown outbox event type: {event_type}")
            handler(db, event.payload)
            event.status = "done"
            event.attempts += 1
            event.processed_at = datetime.now()
            event.last_error = None
            db.commit()
            return "done"
        except Exception as exc:
            db.rollback()
            logger.warning("outbox event %s (%s) failed: %s", event_id, event_type, exc)
            _mark_failed(session_factory, event_id, str(exc))
            return "failed"


def _mark_failed(session_factory: sessionmaker, event_id: int, error: str) -> None:
    with session_factory() as db:
        event = db.get(models.OutboxEvent, event_id)
        if event is None:
            return
        event.status = "failed"
        event.attempts += 1
        event.last_error = error[:512]
        db.commit()


def take_enqueued(db: Session) -> list[int]:
    """Ids of the events queued through ``db`` since the last call."""
    return db.info.pop(_SESSION_KEY, [])


def discard_enqueued(db: Session) -> None:
    db.info.pop(_SESSION_KEY, None)
