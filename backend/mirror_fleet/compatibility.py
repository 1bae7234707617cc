"""Printer/consumable compatibility and activation-code binding rules.

Consumables are named by their stock key (``paper:<model>:<type>``,
``ink:<color>``, ``equipment:<kind>``). Codes come in two kinds: a 专码 is
dedicated to a single printer unit and a printer unit holds at most one; a
通码 is universal but DNP printers do not accept it.
"""

from dataclasses import dataclass

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, outbox
from .errors import CodeBindingRefused, CodeNotFound, FleetError, PrinterInstanceNotFound
from .logging_config import get_logger
from .schemas import EQUIPMENT_KEYS, INK_COLORS
from .stock import is_epson_printer

logger = get_logger("compatibility")

DEDICATED = "专码"
UNIVERSAL = "通码"

DNP_REJECTS_UNIVERSAL = "DNP打印机只支持专码，不支持通码"
UNKNOWN_MODEL = "打印机型号不存在"
INCOMPATIBLE = "该耗材与打印机型号不兼容"
BOUND_ELSEWHERE = "该专码已绑定到其他打印机"
PRINTER_HAS_DEDICATED = "目标打印机已绑定其他专码"


@dataclass(frozen=True)
class CompatibilityResult:
    is_compatible: bool
    reason: str | None = None
    brand: str | None = None


@dataclass(frozen=True)
class CodeBindingResult:
    can_bind: bool
    reason: str | None = None
    code_type: str | None = None


def _consumable_fits(db: Session, printer_model: str, consumable: str) -> bool:
    category, _, rest = consumable.partition(":")
    if category == "paper":
        model, _, paper_type = rest.partition(":")
        if model != printer_model or not paper_type:
            return False
        return db.scalar(
            select(models.PrinterPaperType.id)
            .where(models.PrinterPaperType.printer_model == printer_model)
            .where(models.PrinterPaperType.paper_type == paper_type)
        ) is not None
    if category == "ink":
        return rest in INK_COLORS and is_epson_printer(printer_model)
    if category == "equipment":
        return rest in EQUIPMENT_KEYS
    return False


def check_compatibility(db: Session, printer_model: str, consumable: str, code_type: str) -> CompatibilityResult:
    registered = db.get(models.PrinterModel, printer_model)
    if registered is None:
        return CompatibilityResult(False, UNKNOWN_MODEL)
    brand = registered.brand or None
    if brand == "DNP" and code_type == UNIVERSAL:
        return CompatibilityResult(False, DNP_REJECTS_UNIVERSAL, brand)
    if not _consumable_fits(db, printer_model, consumable):
        return CompatibilityResult(False, INCOMPATIBLE, brand)
    return CompatibilityResult(True, brand=brand)


def batch_compatibility_check(db: Session, printer_model: str, items: list[tuple[str, str]]) -> dict:
    """Check every ``(consumable, code_type)`` pair of an install template against one model."""
    details = [check_compatibility(db, printer_model, consumable, code_type) for consumable, code_type in items]
    return {"compatible": all(d.is_compatible for d in details), "details": details}


def get_code(db: Session, code_id: str) -> models.ConsumableCode:
    code = db.get(models.ConsumableCode, code_id)
    if code is None:
        raise CodeNotFound(code_id)
    return code


def create_code(db: Session, fields: dict) -> models.ConsumableCode:
    if db.get(models.ConsumableCode, fields["id"]) is not None:
        raise FleetError("码编号已存在")
    code = models.ConsumableCode(status="未发", **fields)
    db.add(code)
    db.flush()
    return code


def list_codes(db: Session, code_type: str | None = None, available_only: bool = False) -> list[models.ConsumableCode]:
    stmt = select(models.ConsumableCode).order_by(models.ConsumableCode.created_at.desc(), models.ConsumableCode.id)
    if code_type:
        stmt = stmt.where(models.ConsumableCode.code_type == code_type)
    if available_only:
        stmt = stmt.where(models.ConsumableCode.status == "未发")
        stmt = stmt.where(
            or_(models.ConsumableCode.code_type != DEDICATED, models.ConsumableCode.bound_instance_id.is_(None))
        )
    return list(db.scalars(stmt).all())


def check_code_binding(db: Session, code_id: str, instance_id: str) -> CodeBindingResult:
    code = get_code(db, code_id)
    instance = db.get(models.PrinterInstance, instance_id)
    if instance is None:
        raise PrinterInstanceNotFound(instance_id)

    if code.code_type == UNIVERSAL:
        brand = db.scalar(select(models.PrinterModel.brand).where(models.PrinterModel.code == instance.printer_model))
        if brand == "DNP":
            return CodeBindingResult(False, DNP_REJECTS_UNIVERSAL, code.code_type)
        return CodeBindingResult(True, code_type=code.code_type)

    if code.bound_instance_id and code.bound_instance_id != instance_id:
        return CodeBindingResult(False, BOUND_ELSEWHERE, code.code_type)
    other = db.scalar(
        select(models.ConsumableCode.id)
        .where(models.ConsumableCode.bound_instance_id == instance_id)
        .where(models.ConsumableCode.code_type == DEDICATED)
        .where(models.ConsumableCode.id != code_id)
        .limit(1)
    )
    if other:
        return CodeBindingResult(False, PRINTER_HAS_DEDICATED, code.code_type)
    return CodeBindingResult(True, code_type=code.code_type)


def bind_code(db: Session, code_id: str, instance_id: str, operator: str | None = None) -> models.ConsumableCode:
    """Bind a code to a printer unit and mark it issued (已发).

    The checks are repeated by the database: a 专码 is only taken while it is
    unbound, and ``uq_exclusive_code_instance`` keeps one 专码 per unit.
    """
    result = check_code_binding(db, code_id, instance_id)
    if not result.can_bind:
        logger.info("code %s not bound to %s: %s", code_id, instance_id, result.reason)
        raise CodeBindingRefused(result.reason or "无法绑定")

    stmt = update(models.ConsumableCode).where(models.ConsumableCode.id == code_id)
    if result.code_type == DEDICATED:
        stmt = stmt.where(
            or_(
                models.ConsumableCode.bound_instance_id.is_(None),
                models.ConsumableCode.bound_instance_id == instance_id,
            )
        )
    try:
        changed = db.execute(
            stmt.values(bound_instance_id=instance_id, status="已发").execution_options(synchronize_session=False)
        )
    except IntegrityError as exc:
        raise CodeBindingRefused(PRINTER_HAS_DEDICATED) from exc
    if changed.rowcount != 1:
        raise CodeBindingRefused(BOUND_ELSEWHERE)

    code = get_code(db, code_id)
    db.refresh(code)
    outbox.enqueue_audit(
        db,
        "绑定码",
        "consumable_code",
        code_id,
        operator,
        {"instance_id": instance_id, "code_type": code.code_type},
    )
    return code
