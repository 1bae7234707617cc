"""Physical printer units and their deployment status (in-house / deployed / idle)."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models
from .errors import FleetError, PrinterInstanceNotFound
from .stock import ensure_registered


def list_printer_instances(db: Session, printer_model: str | None = None) -> list[models.PrinterInstance]:
    stmt = select(models.PrinterInstance).order_by(models.PrinterInstance.printer_model, models.PrinterInstance.id)
    if printer_model:
        stmt = stmt.where(models.PrinterInstance.printer_model == printer_model)
    return list(db.scalars(stmt).all())


def create_printer_instance(db: Session, fields: dict) -> models.PrinterInstance:
    if db.get(models.PrinterInstance, fields["id"]) is not None:
        raise FleetError("打印机实例编号已存在")
    ensure_registered(db, fields["printer_model"])
    instance = models.PrinterInstance(**fields)
    db.add(instance)
    db.flush()
    return instance


def update_printer_instance(db: Session, instance_id: str, fields: dict) -> models.PrinterInstance:
    instance = db.get(models.PrinterInstance, instance_id)
    if instance is None:
        raise PrinterInstanceNotFound(instance_id)
    if fields.get("printer_model"):
        ensure_registered(db, fields["printer_model"])
    for key, value in fields.items():
        setattr(instance, key, value)
    instance.updated_at = datetime.now()
    db.flush()
    return instance


def delete_printer_instance(db: Session, instance_id: str) -> None:
    instance = db.get(models.PrinterInstance, instance_id)
    if instance is None:
        raise PrinterInstanceNotFound(instance_id)
    bound = db.scalar(
        select(models.ConsumableCode.id).where(models.ConsumableCode.bound_instance_id == instance_id).limit(1)
    )
    if bound:
        raise FleetError("打印机实例已绑定码，不能删除")
    db.delete(instance)


def count_by_status(instances: list[models.PrinterInstance]) -> dict[str, int]:
    counts = {"in-house": 0, "deployed": 0, "idle": 0}
    for instance in instances:
        counts[instance.status] = counts.get(instance.status, 0) + 1
    return counts
