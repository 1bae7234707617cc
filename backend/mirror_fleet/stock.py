"""Consumable inventory: sufficiency checks, snapshot reads and stock ledger writes.

Stock is stored one row per stock key (``paper:<model>:<type>``,
``ink:<color>``, ``equipment:<kind>``). The ``inventory_profile`` row is the
aggregate header; its ``version`` changes on every mutation and is used for
optimistic concurrency on full-snapshot updates.
"""

from dataclasses import dataclass
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .config import DEFAULT_INVENTORY_LOCATION, INK_LOW_THRESHOLD, PAPER_LOW_THRESHOLD
from .errors import FleetError, InsufficientStock, InventoryVersionConflict, UnknownStockKey
from .logging_config import get_logger
from .schemas import EQUIPMENT_KEYS, INK_COLORS, InventorySnapshot, InventoryUpdate, OutboundItems

logger = get_logger("stock")

EQUIPMENT_NAMES = {
    "routers": "路由器",
    "power_strips": "插板",
    "usb_cables": "USB线",
    "network_cables": "网线",
    "adapters": "电源适配器",
}
INK_NAMES = {"C": "青色", "M": "品红", "Y": "黄色", "K": "黑色"}

DEFAULT_PRINTER_MODELS = [
    ("EPSON-L18058", "EPSON L18058 (A3)", "EPSON", ["A3"]),
    ("EPSON-L8058", "EPSON L8058 (A4)", "EPSON", ["A4"]),
    ("DNP-微印创", "DNP 微印创", "DNP", ["6寸", "8寸"]),
    ("DNP-自购", "DNP 自购", "DNP", ["6寸", "8寸"]),
    ("DNP-锦联", "DNP 锦联", "DNP", ["6寸", "8寸"]),
]
DEFAULT_PAPER_STOCK = {
    "EPSON-L18058": {"A3": 280},
    "EPSON-L8058": {"A4": 450},
    "DNP-微印创": {"6寸": 300, "8寸": 200},
    "DNP-自购": {"6寸": 250, "8寸": 180},
    "DNP-锦联": {"6寸": 320, "8寸": 220},
}
DEFAULT_INK_STOCK = {"C": 8, "M": 6, "Y": 7, "K": 12}
DEFAULT_EQUIPMENT_STOCK = {"routers": 10, "power_strips": 15, "usb_cables": 20, "network_cables": 20, "adapters": 12}


@dataclass(frozen=True)
class StockCheck:
    sufficient: bool
    message: str | None = None


@dataclass(frozen=True)
class StockLine:
    stock_key: str
    category: str
    printer_model: str | None
    item_key: str
    qty: int
    label: str


def paper_key(printer_model: str, paper_type: str) -> str:
    return f"paper:{printer_model}:{paper_type}"


def ink_key(color: str) -> str:
    return f"ink:{color}"


def equipment_key(kind: str) -> str:
    return f"equipment:{kind}"


def is_epson_printer(printer_model: str) -> bool:
    return printer_model.startswith("EPSON")


def stock_lines(items: OutboundItems) -> list[StockLine]:
    """Requested quantities of a bag in check order: paper, ink C/M/Y/K, equipment."""
    lines: list[StockLine] = []
    if items.printer_model and items.paper_type and items.paper_quantity:
        lines.append(
            StockLine(
                paper_key(items.printer_model, items.paper_type),
                "paper",
                items.printer_model,
                items.paper_type,
                items.paper_quantity,
                f"{items.printer_model} {items.paper_type} ",
            )
        )
    for color in INK_COLORS:
        qty = getattr(items, f"ink_{color.lower()}")
        if qty:
            lines.append(StockLine(ink_key(color), "ink", None, color, qty, f"墨水{color}"))
    for kind in EQUIPMENT_KEYS:
        qty = getattr(items, kind)
        if qty:
            lines.append(StockLine(equipment_key(kind), "equipment", None, kind, qty, EQUIPMENT_NAMES[kind]))
    return lines


def available_in(snapshot: InventorySnapshot, line: StockLine) -> int:
    if line.category == "paper":
        return snapshot.paper_stock.get(line.printer_model or "", {}).get(line.item_key, 0)
    if line.category == "ink":
        return snapshot.epson_ink_stock.get(line.item_key, 0)
    return snapshot.equipment_stock.get(line.item_key, 0)


def check_stock(snapshot: InventorySnapshot, items: OutboundItems) -> StockCheck:
    """Decide whether ``snapshot`` covers ``items``; the first shortage found is reported."""
    for line in stock_lines(items):
        have = available_in(snapshot, line)
        if have < line.qty:
            return StockCheck(False, f"{line.label}库存不足 (需要: {line.qty}, 可用: {have})")
    return StockCheck(True)


def _load_profile(db: Session, create: bool = False) -> models.InventoryProfile | None:
    profile = db.scalar(select(models.InventoryProfile).order_by(models.InventoryProfile.id).limit(1))
    if profile is None and create:
        profile = models.InventoryProfile(location=DEFAULT_INVENTORY_LOCATION, last_updated=date.today(), version=0)
        db.add(profile)
        db.flush()
    return profile


def get_inventory(db: Session) -> InventorySnapshot:
    profile = _load_profile(db)
    if profile is not None:
        db.refresh(profile)
    paper_stock: dict[str, dict[str, int]] = {}
    for registered in db.scalars(select(models.PrinterPaperType)).all():
        paper_stock.setdefault(registered.printer_model, {})[registered.paper_type] = 0
    ink_stock = {color: 0 for color in INK_COLORS}
    equipment_stock = {kind: 0 for kind in EQUIPMENT_KEYS}

    rows = db.scalars(select(models.StockItem).execution_options(populate_existing=True)).all()
    for row in rows:
        if row.category == "paper":
            paper_stock.setdefault(row.printer_model or "", {})[row.item_key] = row.quantity
        elif row.category == "ink":
            ink_stock[row.item_key] = row.quantity
        else:
            equipment_stock[row.item_key] = row.quantity

    return InventorySnapshot(
        location=profile.location if profile else DEFAULT_INVENTORY_LOCATION,
        last_updated=(profile.last_updated if profile else date.today()).isoformat(),
        version=profile.version if profile else 0,
        paper_stock=paper_stock,
        epson_ink_stock=ink_stock,
        equipment_stock=equipment_stock,
        notes=profile.notes if profile else None,
    )


def ensure_registered(db: Session, printer_model: str, paper_type: str | None = None) -> None:
    if db.get(models.PrinterModel, printer_model) is None:
        raise UnknownStockKey(printer_model)
    if paper_type is None:
        return
    known = db.scalar(
        select(models.PrinterPaperType.id)
        .where(models.PrinterPaperType.printer_model == printer_model)
        .where(models.PrinterPaperType.paper_type == paper_type)
    )
    if not known:
        raise UnknownStockKey(printer_model, paper_type)


def _touch_profile(db: Session, expected_version: int | None = None, **values) -> bool:
    profile = _load_profile(db, create=True)
    stmt = update(models.InventoryProfile).where(models.InventoryProfile.id == profile.id)
    if expected_version is not None:
        stmt = stmt.where(models.InventoryProfile.version == expected_version)
    stmt = stmt.values(version=models.InventoryProfile.version + 1, last_updated=date.today(), **values)
    result = db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount == 1


def _get_or_create_item(db: Session, key: str, category: str, printer_model: str | None, item_key: str) -> models.StockItem:
    row = db.scalar(
        select(models.StockItem)
        .where(models.StockItem.stock_key == key)
        .execution_options(populate_existing=True)
    )
    if row is None:
        row = models.StockItem(
            stock_key=key,
            category=category,
            printer_model=printer_model,
            item_key=item_key,
            quantity=0,
            version=0,
        )
        db.add(row)
        db.flush()
    return row


def _planned_entries(db: Session, changes: InventoryUpdate) -> list[tuple[str, str, str | None, str, int]]:
    entries: list[tuple[str, str, str | None, str, int]] = []
    for model, papers in (changes.paper_stock or {}).items():
        for paper, qty in papers.items():
            ensure_registered(db, model, paper)
            entries.append((paper_key(model, paper), "paper", model, paper, qty))
    for color, qty in (changes.epson_ink_stock or {}).items():
        if color not in INK_COLORS:
            raise FleetError(f"未知的墨水颜色: {color}")
        entries.append((ink_key(color), "ink", None, color, qty))
    for kind, qty in (changes.equipment_stock or {}).items():
        if kind not in EQUIPMENT_KEYS:
            raise FleetError(f"未知的配件类型: {kind}")
        entries.append((equipment_key(kind), "equipment", None, kind, qty))
    for key, _, _, _, qty in entries:
        if qty < 0:
            raise FleetError(f"库存数量不能小于0: {key}")
    return entries


def update_inventory(db: Session, changes: InventoryUpdate, operator: str | None = None) -> bool:
    """Merge ``changes`` into the stored inventory.

    Supplied maps are merged key by key with absolute quantities; omitted
    keys keep their values. When ``changes.expected_version`` is set the
    update only applies if nobody else wrote in between, otherwise
    InventoryVersionConflict is raised. Returns False on a database failure.
    Unregistered paper keys and negative quantities raise before anything
    is written.
    """
    entries = _planned_entries(db, changes)
    header = {}
    if changes.location is not None:
        header["location"] = changes.location
    if changes.notes is not None:
        header["notes"] = changes.notes
    try:
        if not _touch_profile(db, changes.expected_version, **header):
            logger.warning(
                "inventory update rejected: version conflict (expected %s)", changes.expected_version
            )
            raise InventoryVersionConflict(changes.expected_version)
        for key, category, model, item_key, qty in entries:
            row = _get_or_create_item(db, key, category, model, item_key)
            delta = qty - row.quantity
            if delta == 0:
                continue
            row.quantity = qty
            row.version += 1
            db.add(models.StockMove(stock_key=key, qty=delta, move_type="ADJUST", operator=operator))
        db.flush()
    except SQLAlchemyError:
        logger.exception("inventory update failed")
        return False
    return True


def apply_stock_delta(
    db: Session,
    items: OutboundItems,
    direction: int,
    move_type: str,
    operator: str | None = None,
    ref_id: str | None = None,
) -> list[StockLine]:
    """Add (``direction=1``) or remove (``direction=-1``) the quantities of ``items``.

    Removal is a conditional decrement per stock row, so a concurrent writer
    can never drive a count below zero; losing that race raises
    InsufficientStock and the caller's transaction must roll back.
    """
    lines = stock_lines(items)
    for line in lines:
        if direction < 0:
            result = db.execute(
                update(models.StockItem)
                .where(models.StockItem.stock_key == line.stock_key)
                .where(models.StockItem.quantity >= line.qty)
                .values(quantity=models.StockItem.quantity - line.qty, version=models.StockItem.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                have = db.scalar(
                    select(models.StockItem.quantity).where(models.StockItem.stock_key == line.stock_key)
                ) or 0
                raise InsufficientStock(f"{line.label}库存不足 (需要: {line.qty}, 可用: {have})")
        else:
            if line.category == "paper":
                ensure_registered(db, line.printer_model or "", line.item_key)
            _get_or_create_item(db, line.stock_key, line.category, line.printer_model, line.item_key)
            db.execute(
                update(models.StockItem)
                .where(models.StockItem.stock_key == line.stock_key)
                .values(quantity=models.StockItem.quantity + line.qty, version=models.StockItem.version + 1)
                .execution_options(synchronize_session=False)
            )
        db.add(
            models.StockMove(
                stock_key=line.stock_key,
                qty=line.qty * direction,
                move_type=move_type,
                operator=operator,
                ref_id=ref_id,
            )
        )
    if lines:
        _touch_profile(db)
    db.flush()
    return lines


def record_loss(
    db: Session,
    lost: OutboundItems,
    operator: str | None = None,
    ref_id: str | None = None,
) -> list[StockLine]:
    """Write zero-effect ledger rows for quantities that were taken out and never came back."""
    lines = stock_lines(lost)
    for line in lines:
        db.add(
            models.StockMove(
                stock_key=line.stock_key,
                qty=-line.qty,
                move_type="RETURN_LOSS",
                operator=operator,
                ref_id=ref_id,
            )
        )
    return lines


def stock_alerts(
    snapshot: InventorySnapshot,
    printer_model: str | None = None,
    display_names: dict[str, str] | None = None,
) -> dict:
    names = display_names or {}
    details: list[str] = []
    paper_low = False
    ink_low = False

    if printer_model:
        paper_groups = {printer_model: snapshot.paper_stock.get(printer_model, {})}
    else:
        paper_groups = snapshot.paper_stock
    for model, papers in paper_groups.items():
        for paper, qty in papers.items():
            if qty < PAPER_LOW_THRESHOLD:
                paper_low = True
                details.append(f"{names.get(model, model)} {paper}相纸库存不足 ({qty}张)")

    if not printer_model or is_epson_printer(printer_model):
        for color, qty in snapshot.epson_ink_stock.items():
            if qty < INK_LOW_THRESHOLD:
                ink_low = True
                details.append(f"EPSON {INK_NAMES.get(color, color)}墨水库存不足 ({qty}瓶)")

    return {"paper_low": paper_low, "ink_low": ink_low, "details": details}


def seed_inventory(db: Session) -> None:
    """Register the default printer models and stock levels when the tables are empty."""
    for code, display_name, brand, paper_types in DEFAULT_PRINTER_MODELS:
        if db.get(models.PrinterModel, code) is None:
            db.add(models.PrinterModel(code=code, display_name=display_name, brand=brand))
            db.flush()
            for paper in paper_types:
                db.add(models.PrinterPaperType(printer_model=code, paper_type=paper))
    db.flush()

    if _load_profile(db) is not None:
        return
    _load_profile(db, create=True)
    for model, papers in DEFAULT_PAPER_STOCK.items():
        for paper, qty in papers.items():
            row = _get_or_create_item(db, paper_key(model, paper), "paper", model, paper)
            row.quantity = qty
    for color, qty in DEFAULT_INK_STOCK.items():
        _get_or_create_item(db, ink_key(color), "ink", None, color).quantity = qty
    for kind, qty in DEFAULT_EQUIPMENT_STOCK.items():
        _get_or_create_item(db, equipment_key(kind), "equipment", None, kind).quantity = qty
    db.flush()
