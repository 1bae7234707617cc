import uuid
from datetime import date, datetime
from sqlalchemy import String, Integer, ForeignKey, DateTime, Date, UniqueConstraint, Text, Index, JSON, text
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base


def new_id() -> str:
    return uuid.uuid4().hex


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128))
    model: Mapped[str] = mapped_column(String(64), default="")
    serial: Mapped[str] = mapped_column(String(64), default="", index=True)
    os: Mapped[str] = mapped_column(String(64), default="")
    location: Mapped[str] = mapped_column(String(128), default="")
    owner: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(16), default="运行中")
    printer_model: Mapped[str | None] = mapped_column(ForeignKey("printer_models.code"), nullable=True)
    printer_paper: Mapped[str | None] = mapped_column(String(16), nullable=True)
    printer_connect: Mapped[str | None] = mapped_column(String(16), nullable=True)
    next_maintenance: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, onupdate=datetime.now)


class MaintenanceLog(Base):
    __tablename__ = "maintenance_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.id", ondelete="CASCADE"), index=True)
    log_date: Mapped[date] = mapped_column("date", Date)
    type: Mapped[str] = mapped_column(String(16))  # 维护 | 故障 | 耗材 | 其他
    note: Mapped[str] = mapped_column(String(512), default="")
    executor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)


class PrinterModel(Base):
    __tablename__ = "printer_models"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(128))
    brand: Mapped[str] = mapped_column(String(32), default="")


class PrinterPaperType(Base):
    __tablename__ = "printer_paper_types"
    __table_args__ = (UniqueConstraint("printer_model", "paper_type", name="uq_printer_paper_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    printer_model: Mapped[str] = mapped_column(ForeignKey("printer_models.code"), index=True)
    paper_type: Mapped[str] = mapped_column(String(32))


class InventoryProfile(Base):
    __tablename__ = "inventory_profile"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    location: Mapped[str] = mapped_column(String(128))
    notes: Mapped[str | None] = mapped_column(String(512), nullable=True)
    last_updated: Mapped[date] = mapped_column(Date, default=date.today)
    version: Mapped[int] = mapped_column(Integer, default=0)


class StockItem(Base):
    __tablename__ = "stock_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stock_key: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    category: Mapped[str] = mapped_column(String(16))  # paper | ink | equipment
    printer_model: Mapped[str | None] = mapped_column(ForeignKey("printer_models.code"), nullable=True)
    item_key: Mapped[str] = mapped_column(String(64))
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, default=0)


class StockMove(Base):
    __tablename__ = "stock_moves"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stock_key: Mapped[str] = mapped_column(String(128), index=True)
    qty: Mapped[int] = mapped_column(Integer)
    move_type: Mapped[str] = mapped_column(String(32))
    operator: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ref_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)


class OutboundRecord(Base):
    __tablename__ = "outbound_records"
    __table_args__ = (
        Index(
            "uq_outbound_open_device",
            "device_id",
            unique=True,
            sqlite_where=text("status = 'outbound'"),
            postgresql_where=text("status = 'outbound'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    device_id: Mapped[str] = mapped_column(String(64), index=True)
    device_name: Mapped[str] = mapped_column(String(128), default="")
    destination: Mapped[str] = mapped_column(String(128))
    operator: Mapped[str] = mapped_column(String(64))
    items: Mapped[dict] = mapped_column(JSON, default=dict)
    notes: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="outbound")  # outbound | returned
    original_location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    original_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_instance_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    return_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)


class PrinterInstance(Base):
    __tablename__ = "printer_instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    printer_model: Mapped[str] = mapped_column(ForeignKey("printer_models.code"), index=True)
    serial_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="in-house")  # in-house | deployed | idle
    location: Mapped[str] = mapped_column(String(128), default="")
    deployed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(512), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, onupdate=datetime.now)


class ConsumableCode(Base):
    __tablename__ = "consumable_codes"
    __table_args__ = (
        Index(
            "uq_exclusive_code_instance",
            "bound_instance_id",
            unique=True,
            sqlite_where=text("code_type = '专码'"),
            postgresql_where=text("code_type = '专码'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    code_type: Mapped[str] = mapped_column(String(8))  # 专码 | 通码
    status: Mapped[str] = mapped_column(String(8), default="未发", index=True)  # 未发 | 已发
    bound_instance_id: Mapped[str | None] = mapped_column(ForeignKey("printer_instances.id"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)


class OperationLog(Base):
    __tablename__ = "operation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    action_type: Mapped[str] = mapped_column(String(32), index=True)
    entity_type: Mapped[str] = mapped_column(String(64), index=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operator: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64))  # audit_log | printer_instance_sync
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)  # pending | processing | done | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(128))
    salt: Mapped[str] = mapped_column(String(32))
    is_active: Mapped[int] = mapped_column(Integer, default=1)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    description: Mapped[str] = mapped_column(String(128), default="")


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    description: Mapped[str] = mapped_column(String(256), default="")


class UserRole(Base):
    __tablename__ = "user_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), index=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), index=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id"), index=True)


class SessionToken(Base):
    __tablename__ = "session_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("user_id", "method", "path", "idempotency_key", name="uq_idempotency_scope"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    method: Mapped[str] = mapped_column(String(16))
    path: Mapped[str] = mapped_column(String(128))
    idempotency_key: Mapped[str] = mapped_column(String(128), index=True)
    request_hash: Mapped[str] = mapped_column(String(128))
    status_code: Mapped[int] = mapped_column(Integer, default=0)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
