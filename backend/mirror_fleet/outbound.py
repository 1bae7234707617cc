"""Outbound and return of devices and consumables.

A device can have at most one open (``status = 'outbound'``) record; the
partial unique index ``uq_outbound_open_device`` backs the pre-check below.
All functions here run inside the caller's transaction and never commit.
Audit entries and printer-instance changes are queued as outbox events and
applied after the caller commits.
"""

from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, outbox
from .config import DEFAULT_INSTANCE_LOCATION, DEFAULT_OWNER
from .devices import get_device, update_device
from .errors import (
    DeviceNotFound,
    FleetError,
    InsufficientStock,
    OpenRecordDeleteRefused,
    OutboundAlreadyOpen,
    OutboundAlreadyReturned,
    OutboundRecordNotFound,
    ReturnExceedsOutbound,
)
from .logging_config import get_logger
from .schemas import OutboundCreate, OutboundItems, OutboundReturn
from .stock import apply_stock_delta, check_stock, get_inventory, record_loss

logger = get_logger("outbound")

QUANTITY_FIELDS = (
    "paper_quantity",
    "ink_c",
    "ink_m",
    "ink_y",
    "ink_k",
    "routers",
    "power_strips",
    "usb_cables",
    "network_cables",
    "adapters",
)


def _format_time(value: datetime) -> str:
    return value.strftime("%Y/%m/%d %H:%M:%S")


def find_open_record(db: Session, device_id: str) -> models.OutboundRecord | None:
    return db.scalar(
        select(models.OutboundRecord)
        .where(models.OutboundRecord.device_id == device_id)
        .where(models.OutboundRecord.status == "outbound")
        .limit(1)
    )


def get_outbound_record(db: Session, record_id: str) -> models.OutboundRecord | None:
    return db.get(models.OutboundRecord, record_id)


def list_outbound_records(
    db: Session,
    status: str | None = None,
    device_id: str | None = None,
) -> list[models.OutboundRecord]:
    stmt = select(models.OutboundRecord).order_by(models.OutboundRecord.created_at.desc())
    if status:
        stmt = stmt.where(models.OutboundRecord.status == status)
    if device_id:
        stmt = stmt.where(models.OutboundRecord.device_id == device_id)
    return list(db.scalars(stmt).all())


def create_outbound_record(db: Session, payload: OutboundCreate, created_by: str | None = None) -> models.OutboundRecord:
    device = get_device(db, payload.device_id)
    if device is None:
        logger.info("outbound rejected: device %s not found", payload.device_id)
        raise DeviceNotFound(payload.device_id)
    original_location = device.location
    original_owner = device.owner

    existing = find_open_record(db, payload.device_id)
    if existing is not None:
        logger.info("outbound rejected: device %s already out (record %s)", payload.device_id, existing.id)
        raise OutboundAlreadyOpen(_format_time(existing.created_at), existing.destination)

    check = check_stock(get_inventory(db), payload.items)
    if not check.sufficient:
        logger.info("outbound rejected for %s: %s", payload.device_id, check.message)
        raise InsufficientStock(check.message or "")

    items = payload.items.model_dump(exclude_none=True)
    record = models.OutboundRecord(
        device_id=payload.device_id,
        device_name=device.name,
        destination=payload.destination,
        operator=payload.operator,
        items=items,
        notes=payload.notes,
        status="outbound",
        original_location=original_location,
        original_owner=original_owner,
        device_instance_id=payload.device_instance_id,
        created_by=created_by,
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError as exc:
        # another request opened a record for this device after the pre-check
        raise OutboundAlreadyOpen() from exc

    if payload.device_instance_id:
        outbox.enqueue_printer_instance_sync(
            db, payload.device_instance_id, "deployed", payload.destination, date.today()
        )

    outbox.enqueue_audit(
        db,
        "出库",
        "outbound_record",
        record.id,
        payload.operator,
        {
            "device_id": payload.device_id,
            "device_name": device.name,
            "destination": payload.destination,
            "items": items,
            "original_location": original_location,
            "original_owner": original_owner,
        },
    )

    if not update_device(db, payload.device_id, {"location": payload.destination, "owner": payload.operator}):
        logger.warning("device %s custody not updated, outbound record %s kept", payload.device_id, record.id)
    else:
        logger.info("device %s moved: %s -> %s", payload.device_id, original_location, payload.destination)

    apply_stock_delta(db, payload.items, -1, "OUTBOUND", payload.operator, record.id)
    return record


def _merge_returned_items(record: models.OutboundRecord, returned: OutboundItems) -> tuple[OutboundItems, OutboundItems]:
    """Fill the paper key from the record and work out what never came back."""
    taken = OutboundItems(**(record.items or {}))
    merged = returned.model_copy()
    if merged.paper_quantity:
        if merged.printer_model is None:
            merged.printer_model = taken.printer_model
        if merged.paper_type is None:
            merged.paper_type = taken.paper_type
        if (merged.printer_model, merged.paper_type) != (taken.printer_model, taken.paper_type):
            raise FleetError("归还相纸型号与出库记录不一致")

    lost = {"printer_model": taken.printer_model, "paper_type": taken.paper_type}
    for field in QUANTITY_FIELDS:
        got_back = getattr(merged, field) or 0
        went_out = getattr(taken, field) or 0
        if got_back > went_out:
            raise ReturnExceedsOutbound(field, got_back, went_out)
        if went_out - got_back > 0:
            lost[field] = went_out - got_back
    return merged, OutboundItems(**lost)


def _restore_custody(db: Session, record: models.OutboundRecord) -> None:
    updates = {}
    if record.original_location:
        updates["location"] = record.original_location
    updates["owner"] = record.original_owner or DEFAULT_OWNER
    if not update_device(db, record.device_id, updates):
        logger.warning("device %s custody not restored for record %s", record.device_id, record.id)
    else:
        logger.info("device %s custody restored: %s", record.device_id, updates)


def return_outbound_items(db: Session, record_id: str, payload: OutboundReturn) -> models.OutboundRecord:
    record = get_outbound_record(db, record_id)
    if record is None:
        raise OutboundRecordNotFound()
    if record.status == "returned":
        raise OutboundAlreadyReturned()

    returned, lost = _merge_returned_items(record, payload.returned_items)
    returned_dump = returned.model_dump(exclude_none=True)
    lost_dump = {k: v for k, v in lost.model_dump(exclude_none=True).items() if k in QUANTITY_FIELDS}
    if "paper_quantity" in lost_dump:
        lost_dump.update(lost.model_dump(include={"printer_model", "paper_type"}, exclude_none=True))
    return_info = {
        "return_date": datetime.now().isoformat(),
        "return_operator": payload.return_operator,
        "returned_items": returned_dump,
        "equipment_damage": payload.equipment_damage,
        "return_notes": payload.return_notes,
        "lost_items": lost_dump,
    }

    result = db.execute(
        update(models.OutboundRecord)
        .where(models.OutboundRecord.id == record_id)
        .where(models.OutboundRecord.status == "outbound")
        .values(status="returned", return_info=return_info)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise OutboundAlreadyReturned()
    db.refresh(record)

    outbox.enqueue_audit(
        db,
        "归还",
        "outbound_record",
        record.id,
        payload.return_operator,
        {
            "returned_items": returned_dump,
            "lost_items": lost_dump,
            "equipment_damage": payload.equipment_damage,
            "return_notes": payload.return_notes,
        },
    )

    _restore_custody(db, record)

    if record.device_instance_id:
        outbox.enqueue_printer_instance_sync(
            db,
            record.device_instance_id,
            "in-house",
            record.original_location or DEFAULT_INSTANCE_LOCATION,
            None,
        )

    apply_stock_delta(db, returned, 1, "RETURN", payload.return_operator, record.id)
    if lost_dump:
        record_loss(db, lost, payload.return_operator, record.id)
        logger.info("record %s returned with shortfall %s", record.id, lost_dump)
    return record


def delete_outbound_record(
    db: Session,
    record_id: str,
    force: bool = False,
    reconcile: bool = False,
    operator: str | None = None,
) -> dict:
    """Delete a record.

    Returned records go away without side effects. An open record is only
    deleted with ``reconcile`` (stock and custody are restored as for a full
    return first) or ``force`` (nothing is restored).
    """
    record = get_outbound_record(db, record_id)
    if record is None:
        raise OutboundRecordNotFound()
    was_open = record.status == "outbound"
    if was_open and not (force or reconcile):
        raise OpenRecordDeleteRefused()

    reconciled = False
    if was_open and reconcile:
        taken = OutboundItems(**(record.items or {}))
        apply_stock_delta(db, taken, 1, "RECONCILE", operator, record.id)
        _restore_custody(db, record)
        if record.device_instance_id:
            outbox.enqueue_printer_instance_sync(
                db,
                record.device_instance_id,
                "in-house",
                record.original_location or DEFAULT_INSTANCE_LOCATION,
                None,
            )
        reconciled = True
    elif was_open:
        logger.warning("open outbound record %s force-deleted without reconciliation", record.id)

    outbox.enqueue_audit(
        db,
        "删除",
        "outbound_record",
        record.id,
        operator,
        {
            "device_id": record.device_id,
            "status": record.status,
            "items": record.items,
            "forced": was_open and not reconciled,
            "reconciled": reconciled,
        },
    )
    db.delete(record)
    db.flush()
    return {"deleted": record_id, "was_open": was_open, "reconciled": reconciled}
