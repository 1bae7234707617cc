"""Device directory: identity, custody (location/owner) and maintenance history."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .errors import DeviceNotFound, FleetError
from .logging_config import get_logger
from .stock import ensure_registered

logger = get_logger("devices")

DEMO_DEVICES = [
    ("dev-01", "设备01", "魔镜6号", "SN-01-2025", "杭州展厅A区", "张三", "运行中", "EPSON-L8058", "A4", "Wi-Fi"),
    ("dev-02", "设备02", "魔镜6号", "SN-02-2025", "杭州展厅B区", "李四", "维护", "EPSON-L18058", "A3", "USB"),
    ("dev-03", "设备03", "魔镜7号", "SN-03-2025", "上海展厅A区", "王五", "运行中", "EPSON-L8058", "A4", "Wi-Fi"),
    ("dev-04", "设备04", "魔镜6号", "SN-04-2025", "上海展厅B区", "赵六", "离线", "EPSON-L18058", "A3", "USB"),
    ("dev-05", "设备05", "魔镜7号", "SN-05-2025", "北京展厅A区", "孙七", "运行中", "EPSON-L8058", "A4", "Wi-Fi"),
]


def get_device(db: Session, device_id: str) -> models.Device | None:
    return db.get(models.Device, device_id)


def update_device(db: Session, device_id: str, fields: dict) -> bool:
    """Apply ``fields`` to a device. Failures are logged and reported as False."""
    try:
        device = db.get(models.Device, device_id)
        if device is None:
            logger.warning("device update skipped: %s not found", device_id)
            return False
        if fields.get("printer_model"):
            ensure_registered(db, fields["printer_model"])
        for key, value in fields.items():
            setattr(device, key, value)
        device.updated_at = datetime.now()
        db.flush()
    except FleetError:
        raise
    except SQLAlchemyError:
        logger.exception("device update failed: %s", device_id)
        return False
    return True


def list_devices(db: Session, status: str | None = None, keyword: str | None = None) -> list[models.Device]:
    stmt = select(models.Device).order_by(models.Device.name)
    if status:
        stmt = stmt.where(models.Device.status == status)
    if keyword:
        like = f"%{keyword}%"
        stmt = stmt.where(
            models.Device.name.like(like)
            | models.Device.serial.like(like)
            | models.Device.location.like(like)
            | models.Device.owner.like(like)
        )
    return list(db.scalars(stmt).all())


def create_device(db: Session, fields: dict) -> models.Device:
    if db.get(models.Device, fields["id"]) is not None:
        raise FleetError("设备编号已存在")
    if fields.get("printer_model"):
        ensure_registered(db, fields["printer_model"])
    device = models.Device(**fields)
    db.add(device)
    db.flush()
    return device


def delete_device(db: Session, device_id: str) -> None:
    device = db.get(models.Device, device_id)
    if device is None:
        raise DeviceNotFound(device_id)
    open_record = db.scalar(
        select(models.OutboundRecord.id)
        .where(models.OutboundRecord.device_id == device_id)
        .where(models.OutboundRecord.status == "outbound")
        .limit(1)
    )
    if open_record:
        raise FleetError("设备存在未归还的出库记录，不能删除")
    for log in db.scalars(select(models.MaintenanceLog).where(models.MaintenanceLog.device_id == device_id)).all():
        db.delete(log)
    db.delete(device)


def add_maintenance_log(db: Session, device_id: str, fields: dict) -> models.MaintenanceLog:
    if db.get(models.Device, device_id) is None:
        raise DeviceNotFound(device_id)
    log = models.MaintenanceLog(device_id=device_id, **fields)
    db.add(log)
    db.flush()
    return log


def list_maintenance_logs(db: Session, device_id: str) -> list[models.MaintenanceLog]:
    if db.get(models.Device, device_id) is None:
        raise DeviceNotFound(device_id)
    stmt = (
        select(models.MaintenanceLog)
        .where(models.MaintenanceLog.device_id == device_id)
        .order_by(models.MaintenanceLog.log_date.desc(), models.MaintenanceLog.id.desc())
    )
    return list(db.scalars(stmt).all())


def seed_devices(db: Session) -> None:
    if db.scalar(select(models.Device.id).limit(1)):
        return
    for dev_id, name, model, serial, location, owner, status, printer_model, paper, connect in DEMO_DEVICES:
        db.add(
            models.Device(
                id=dev_id,
                name=name,
                model=model,
                serial=serial,
                os="Windows 11",
                location=location,
                owner=owner,
                status=status,
                printer_model=printer_model,
                printer_paper=paper,
                printer_connect=connect,
            )
        )
    db.flush()
