from datetime import date, datetime, timedelta
import csv
from dataclasses import asdict
import hashlib
import io
import json
import secrets
from contextlib import nullcontext
from fastapi import FastAPI, Depends, HTTPException, Response, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from .db import SessionLocal
from . import compatibility, config, devices, instances, models, outbound, outbox, schemas, stock
from .errors import FleetError
from .logging_config import configure_logging, get_logger, request_source_ctx, trace_id_ctx

logger = get_logger("api")

app = FastAPI(title="Mirror Fleet")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def audit_trace_middleware(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id") or secrets.token_hex(8)
    request_source = request.headers.get("X-Request-Source")
    if not request_source:
        request_source = request.client.host if request.client else "unknown"
    trace_id_ctx.set(trace_id)
    request_source_ctx.set(request_source)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


PERMISSION_DESCRIPTIONS = {
    "devices.read": "设备查看",
    "devices.write": "设备新增/编辑",
    "devices.delete": "设备删除",
    "inventory.read": "库存查看",
    "inventory.adjust": "库存调整",
    "outbound.read": "出库记录查看",
    "outbound.create": "设备出库",
    "outbound.return": "出库归还",
    "outbound.delete": "出库记录删除",
    "printer_models.write": "打印机型号登记",
    "printer_instances.read": "打印机实例查看",
    "printer_instances.write": "打印机实例管理",
    "codes.read": "码查看",
    "codes.write": "码登记/绑定",
    "audit.read": "审计日志查看",
    "outbox.dispatch": "补发待处理事件",
    "users.read": "用户查看",
    "users.write": "用户管理",
    "roles.read": "角色查看",
    "roles.write": "角色管理",
    "system.setup": "系统初始化",
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def tx(db: Session):
    # SQLAlchemy 2.0 can auto-begin a transaction on reads; avoid nested begin() errors.
    return db.begin() if not db.in_transaction() else nullcontext()


def request_hash(payload: dict | None) -> str:
    normalized = json.dumps(payload or {}, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _find_idempotency(idb: Session, user_id: int, method: str, path: str, key: str):
    return idb.scalar(
        select(models.IdempotencyRecord).where(
            models.IdempotencyRecord.user_id == user_id,
            models.IdempotencyRecord.method == method,
            models.IdempotencyRecord.path == path,
            models.IdempotencyRecord.idempotency_key == key,
        )
    )


def replay_or_lock_idempotency(
    user_id: int,
    method: str,
    path: str,
    key: str | None,
    payload: dict | None,
):
    if not key:
        return None, None
    r_hash = request_hash(payload)
    with SessionLocal() as idb:
        existing = _find_idempotency(idb, user_id, method, path, key)
        if existing:
            if existing.request_hash != r_hash:
                raise HTTPException(409, "幂等键已被用于不同请求")
            if existing.status_code <= 0:
                raise HTTPException(409, "请求处理中，请稍后重试")
            return json.loads(existing.response_body or "{}"), None
        idb.add(
            models.IdempotencyRecord(
                user_id=user_id,
                method=method,
                path=path,
                idempotency_key=key,
                request_hash=r_hash,
                status_code=0,
                response_body=None,
            )
        )
        try:
            idb.commit()
        except IntegrityError:
            idb.rollback()
            raced = _find_idempotency(idb, user_id, method, path, key)
            if raced and raced.request_hash == r_hash and raced.status_code > 0:
                return json.loads(raced.response_body or "{}"), None
            raise HTTPException(409, "重复请求，请稍后重试")
    return None, r_hash


def finalize_idempotency(
    user_id: int,
    method: str,
    path: str,
    key: str | None,
    payload_hash: str | None,
    response_body: dict | None = None,
):
    if not key or not payload_hash:
        return
    with SessionLocal() as idb:
        rec = _find_idempotency(idb, user_id, method, path, key)
        if not rec:
            return
        rec.request_hash = payload_hash
        rec.status_code = 200
        rec.response_body = json.dumps(response_body or {}, ensure_ascii=False, default=str)
        idb.commit()


def release_idempotency_lock(user_id: int, method: str, path: str, key: str | None):
    if not key:
        return
    with SessionLocal() as idb:
        rec = _find_idempotency(idb, user_id, method, path, key)
        if rec and rec.status_code == 0:
            idb.delete(rec)
            idb.commit()


def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256((salt + password).encode("utf-8")).hexdigest()


def get_user_permissions(db: Session, user_id: int) -> set[str]:
    stmt = (
        select(models.Permission.code)
        .join(models.RolePermission, models.RolePermission.permission_id == models.Permission.id)
        .join(models.UserRole, models.UserRole.role_id == models.RolePermission.role_id)
        .where(models.UserRole.user_id == user_id)
    )
    return set(db.scalars(stmt).all())


def get_current_user(
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing token")
    token = authorization.replace("Bearer ", "", 1).strip()
    session = db.scalar(select(models.SessionToken).where(models.SessionToken.token == token))
    if not session or session.expires_at < datetime.utcnow():
        raise HTTPException(401, "invalid or expired token")
    user = db.get(models.User, session.user_id)
    if not user or not user.is_active:
        raise HTTPException(401, "inactive user")
    return user


def require_permission(code: str):
    def checker(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
        perms = get_user_permissions(db, user.id)
        if code not in perms:
            raise HTTPException(403, "permission denied")
        return True

    return checker


def add_operation_log(
    action_type: str,
    entity_type: str,
    entity_id: str | None,
    operator: str | None,
    details: dict | None = None,
):
    # Keep business APIs available even if audit log storage is temporarily broken.
    try:
        with SessionLocal() as log_db:
            outbox.write_audit_log(
                log_db,
                {
                    "action_type": action_type,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "operator": operator,
                    "details": details or {},
                    "trace_id": trace_id_ctx.get(),
                    "request_source": request_source_ctx.get(),
                },
            )
            log_db.commit()
    except SQLAlchemyError:
        logger.warning("audit log write failed: %s %s %s", action_type, entity_type, entity_id, exc_info=True)


def dispatch_outbox(db: Session):
    event_ids = outbox.take_enqueued(db)
    if not event_ids:
        return
    try:
        outbox.dispatch_events(SessionLocal, event_ids)
    except SQLAlchemyError:
        logger.warning("outbox dispatch failed for events %s", event_ids, exc_info=True)


def seed_permissions_and_admin(db: Session):
    existing = {p.code: p for p in db.scalars(select(models.Permission)).all()}
    for code, desc in PERMISSION_DESCRIPTIONS.items():
        if code not in existing:
            db.add(models.Permission(code=code, description=desc))
        elif existing[code].description != desc:
            existing[code].description = desc
    db.flush()

    admin_role = db.scalar(select(models.Role).where(models.Role.name == "admin"))
    if not admin_role:
        admin_role = models.Role(name="admin", description="System Administrator")
        db.add(admin_role)
        db.flush()

    perm_ids = db.scalars(select(models.Permission.id)).all()
    existing_ids = set(
        db.scalars(select(models.RolePermission.permission_id).where(models.RolePermission.role_id == admin_role.id)).all()
    )
    for pid in perm_ids:
        if pid not in existing_ids:
            db.add(models.RolePermission(role_id=admin_role.id, permission_id=pid))

    admin_user = db.scalar(select(models.User).where(models.User.username == "admin"))
    if not admin_user:
        salt = secrets.token_hex(4)
        admin_user = models.User(
            username="admin",
            salt=salt,
            password_hash=hash_password("admin", salt),
            is_active=1,
        )
        db.add(admin_user)
        db.flush()
        db.add(models.UserRole(user_id=admin_user.id, role_id=admin_role.id))

    db.commit()


def device_out(device: models.Device) -> dict:
    return {
        "id": device.id,
        "name": device.name,
        "model": device.model,
        "serial": device.serial,
        "os": device.os,
        "location": device.location,
        "owner": device.owner,
        "status": device.status,
        "printer_model": device.printer_model,
        "printer_paper": device.printer_paper,
        "printer_connect": device.printer_connect,
        "next_maintenance": device.next_maintenance.isoformat() if device.next_maintenance else None,
        "updated_at": device.updated_at.isoformat() if device.updated_at else None,
    }


def record_out(record: models.OutboundRecord) -> dict:
    return {
        "id": record.id,
        "date": record.created_at.isoformat() if record.created_at else None,
        "device_id": record.device_id,
        "device_name": record.device_name,
        "destination": record.destination,
        "operator": record.operator,
        "items": record.items or {},
        "notes": record.notes,
        "status": record.status,
        "original_location": record.original_location,
        "original_owner": record.original_owner,
        "device_instance_id": record.device_instance_id,
        "return_info": record.return_info,
        "created_by": record.created_by,
    }


def instance_out(instance: models.PrinterInstance) -> dict:
    return {
        "id": instance.id,
        "printer_model": instance.printer_model,
        "serial_number": instance.serial_number,
        "status": instance.status,
        "location": instance.location,
        "deployed_date": instance.deployed_date.isoformat() if instance.deployed_date else None,
        "notes": instance.notes,
    }


def audit_out(log: models.OperationLog) -> dict:
    return {
        "id": log.id,
        "action_type": log.action_type,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "operator": log.operator,
        "details": json.loads(log.details) if log.details else None,
        "trace_id": log.trace_id,
        "request_source": log.request_source,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


@app.on_event("startup")
def on_startup():
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)
    with SessionLocal() as db:
        try:
            seed_permissions_and_admin(db)
        except OperationalError as exc:
            raise RuntimeError("数据库结构未初始化，请先执行 Alembic 迁移：alembic upgrade head") from exc


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/auth/login")
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = db.scalar(select(models.User).where(models.User.username == payload.username))
    if not user or not user.is_active:
        raise HTTPException(401, "invalid credentials")
    if hash_password(payload.password, user.salt) != user.password_hash:
        raise HTTPException(401, "invalid credentials")

    token = secrets.token_urlsafe(32)
    expires = datetime.utcnow() + timedelta(hours=config.TOKEN_TTL_HOURS)
    db.add(models.SessionToken(user_id=user.id, token=token, expires_at=expires))
    db.commit()

    perms = sorted(get_user_permissions(db, user.id))
    return {"token": token, "user": {"id": user.id, "username": user.username}, "permissions": perms}


@app.post("/auth/logout")
def logout(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.execute(text("DELETE FROM session_tokens WHERE user_id = :uid"), {"uid": user.id})
    db.commit()
    return {"status": "ok"}


@app.get("/auth/me")
def me(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    perms = sorted(get_user_permissions(db, user.id))
    return {"id": user.id, "username": user.username, "permissions": perms}


@app.get("/permissions")
def list_permissions(_: bool = Depends(require_permission("roles.read")), db: Session = Depends(get_db)):
    perms = db.scalars(select(models.Permission)).all()
    return [{"code": p.code, "description": p.description} for p in perms]


@app.get("/users")
def list_users(_: bool = Depends(require_permission("users.read")), db: Session = Depends(get_db)):
    users = db.scalars(select(models.User)).all()
    result = []
    for u in users:
        roles = db.scalars(select(models.Role.name).join(models.UserRole).where(models.UserRole.user_id == u.id)).all()
        result.append({"id": u.id, "username": u.username, "is_active": u.is_active, "roles": roles})
    return result


@app.post("/users")
def create_user(
    payload: schemas.UserCreate,
    _: bool = Depends(require_permission("users.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if db.scalar(select(models.User.id).where(models.User.username == payload.username)):
        raise HTTPException(400, "username exists")
    salt = secrets.token_hex(4)
    user = models.User(
        username=payload.username,
        salt=salt,
        password_hash=hash_password(payload.password, salt),
        is_active=payload.is_active,
    )
    db.add(user)
    db.flush()
    for rid in payload.role_ids:
        db.add(models.UserRole(user_id=user.id, role_id=rid))
    db.commit()
    add_operation_log("新增", "user", str(user.id), current_user.username, {"username": payload.username})
    return {"id": user.id}


@app.get("/roles")
def list_roles(_: bool = Depends(require_permission("roles.read")), db: Session = Depends(get_db)):
    roles = db.scalars(select(models.Role)).all()
    result = []
    for r in roles:
        perms = db.scalars(
            select(models.Permission.code)
            .join(models.RolePermission, models.RolePermission.permission_id == models.Permission.id)
            .where(models.RolePermission.role_id == r.id)
        ).all()
        result.append({"id": r.id, "name": r.name, "description": r.description, "permissions": perms})
    return result


@app.post("/roles")
def create_role(
    payload: schemas.RoleCreate,
    _: bool = Depends(require_permission("roles.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if db.scalar(select(models.Role.id).where(models.Role.name == payload.name)):
        raise HTTPException(400, "role exists")
    role = models.Role(name=payload.name, description=payload.description)
    db.add(role)
    db.flush()
    perm_ids = db.scalars(select(models.Permission.id).where(models.Permission.code.in_(payload.permission_codes))).all()
    for pid in perm_ids:
        db.add(models.RolePermission(role_id=role.id, permission_id=pid))
    db.commit()
    add_operation_log("新增", "role", str(role.id), current_user.username, {"name": payload.name})
    return {"id": role.id}


@app.post("/setup/demo")
def setup_demo(
    _: bool = Depends(require_permission("system.setup")),
    db: Session = Depends(get_db),
):
    if db.scalar(select(models.Device.id).limit(1)):
        return {"status": "exists"}
    with tx(db):
        stock.seed_inventory(db)
        devices.seed_devices(db)
    db.commit()
    return {"status": "ok"}


@app.get("/printer_models")
def list_printer_models(_: bool = Depends(require_permission("inventory.read")), db: Session = Depends(get_db)):
    result = []
    for pm in db.scalars(select(models.PrinterModel).order_by(models.PrinterModel.code)).all():
        papers = db.scalars(
            select(models.PrinterPaperType.paper_type).where(models.PrinterPaperType.printer_model == pm.code)
        ).all()
        result.append({"code": pm.code, "display_name": pm.display_name, "brand": pm.brand, "paper_types": papers})
    return result


@app.post("/printer_models")
def create_printer_model(
    payload: schemas.PrinterModelCreate,
    _: bool = Depends(require_permission("printer_models.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    code = payload.code.strip()
    if db.get(models.PrinterModel, code):
        raise HTTPException(400, "打印机型号已存在")
    db.add(models.PrinterModel(code=code, display_name=payload.display_name, brand=payload.brand))
    db.flush()
    for paper in dict.fromkeys(payload.paper_types):
        db.add(models.PrinterPaperType(printer_model=code, paper_type=paper))
    db.commit()
    add_operation_log("新增", "printer_model", code, current_user.username, payload.model_dump())
    return {"code": code}


@app.get("/devices")
def list_devices(
    status: str | None = Query(default=None),
    keyword: str | None = Query(default=None),
    _: bool = Depends(require_permission("devices.read")),
    db: Session = Depends(get_db),
):
    return [device_out(d) for d in devices.list_devices(db, status, keyword)]


@app.get("/devices/{device_id}")
def get_device(device_id: str, _: bool = Depends(require_permission("devices.read")), db: Session = Depends(get_db)):
    device = devices.get_device(db, device_id)
    if not device:
        raise HTTPException(404, "设备不存在")
    body = device_out(device)
    open_record = outbound.find_open_record(db, device_id)
    body["open_outbound_id"] = open_record.id if open_record else None
    return body


@app.post("/devices")
def create_device(
    payload: schemas.DeviceCreate,
    _: bool = Depends(require_permission("devices.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        device = devices.create_device(db, payload.model_dump())
        body = device_out(device)
    db.commit()
    add_operation_log("新增", "device", payload.id, current_user.username, {"name": payload.name})
    return body


@app.put("/devices/{device_id}")
def update_device(
    device_id: str,
    payload: schemas.DeviceUpdate,
    _: bool = Depends(require_permission("devices.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not devices.get_device(db, device_id):
        raise HTTPException(404, "设备不存在")
    fields = payload.model_dump(exclude_unset=True)
    with tx(db):
        ok = devices.update_device(db, device_id, fields)
        if not ok:
            raise HTTPException(500, "设备更新失败")
        body = device_out(devices.get_device(db, device_id))
    db.commit()
    add_operation_log("编辑", "device", device_id, current_user.username, payload.model_dump(mode="json", exclude_unset=True))
    return body


@app.delete("/devices/{device_id}")
def delete_device(
    device_id: str,
    _: bool = Depends(require_permission("devices.delete")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        devices.delete_device(db, device_id)
    db.commit()
    add_operation_log("删除", "device", device_id, current_user.username)
    return {"status": "deleted"}


@app.get("/devices/{device_id}/logs")
def list_device_logs(device_id: str, _: bool = Depends(require_permission("devices.read")), db: Session = Depends(get_db)):
    return devices.list_maintenance_logs(db, device_id)


@app.post("/devices/{device_id}/logs")
def add_device_log(
    device_id: str,
    payload: schemas.MaintenanceLogCreate,
    _: bool = Depends(require_permission("devices.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        log = devices.add_maintenance_log(db, device_id, payload.model_dump())
        log_id = log.id
    db.commit()
    add_operation_log("维护记录", "device", device_id, current_user.username, payload.model_dump(mode="json"))
    return {"id": log_id}


@app.get("/inventory")
def get_inventory(_: bool = Depends(require_permission("inventory.read")), db: Session = Depends(get_db)):
    return stock.get_inventory(db).model_dump()


@app.put("/inventory")
def update_inventory(
    payload: schemas.InventoryUpdate,
    _: bool = Depends(require_permission("inventory.adjust")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        before = stock.get_inventory(db)
        if not stock.update_inventory(db, payload, operator=current_user.username):
            raise HTTPException(500, "库存更新失败")
        after = stock.get_inventory(db)
    db.commit()
    add_operation_log(
        "库存调整",
        "inventory",
        None,
        current_user.username,
        {"before": before.model_dump(), "after": after.model_dump()},
    )
    return after.model_dump()


@app.get("/inventory/alerts")
def inventory_alerts(
    printer_model: str | None = Query(default=None),
    _: bool = Depends(require_permission("inventory.read")),
    db: Session = Depends(get_db),
):
    names = {pm.code: pm.display_name for pm in db.scalars(select(models.PrinterModel)).all()}
    return stock.stock_alerts(stock.get_inventory(db), printer_model, names)


@app.get("/stock_moves")
def list_stock_moves(
    ref_id: str | None = Query(default=None),
    _: bool = Depends(require_permission("inventory.read")),
    db: Session = Depends(get_db),
):
    stmt = select(models.StockMove).order_by(models.StockMove.id.desc())
    if ref_id:
        stmt = stmt.where(models.StockMove.ref_id == ref_id)
    return db.scalars(stmt).all()


@app.post("/outbound_records")
def create_outbound_record(
    payload: schemas.OutboundCreate,
    _: bool = Depends(require_permission("outbound.create")),
    current_user: models.User = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
):
    replay, p_hash = replay_or_lock_idempotency(
        current_user.id,
        "POST",
        "/outbound_records",
        idempotency_key,
        payload.model_dump(),
    )
    if replay is not None:
        return replay
    try:
        with tx(db):
            record = outbound.create_outbound_record(db, payload, created_by=current_user.username)
            record_id = record.id
        db.commit()
    except Exception:
        db.rollback()
        outbox.discard_enqueued(db)
        release_idempotency_lock(current_user.id, "POST", "/outbound_records", idempotency_key)
        raise
    dispatch_outbox(db)
    response = {"status": "ok", "record_id": record_id}
    finalize_idempotency(current_user.id, "POST", "/outbound_records", idempotency_key, p_hash, response)
    return response


@app.get("/outbound_records")
def list_outbound_records(
    status: str | None = Query(default=None, pattern="^(outbound|returned)$"),
    device_id: str | None = Query(default=None),
    _: bool = Depends(require_permission("outbound.read")),
    db: Session = Depends(get_db),
):
    return [record_out(r) for r in outbound.list_outbound_records(db, status, device_id)]


@app.get("/outbound_records/{record_id}")
def get_outbound_record(record_id: str, _: bool = Depends(require_permission("outbound.read")), db: Session = Depends(get_db)):
    record = outbound.get_outbound_record(db, record_id)
    if not record:
        raise HTTPException(404, "出库记录不存在")
    return record_out(record)


@app.post("/outbound_records/{record_id}/return")
def return_outbound_record(
    record_id: str,
    payload: schemas.OutboundReturn,
    _: bool = Depends(require_permission("outbound.return")),
    current_user: models.User = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
):
    path = f"/outbound_records/{record_id}/return"
    replay, p_hash = replay_or_lock_idempotency(current_user.id, "POST", path, idempotency_key, payload.model_dump())
    if replay is not None:
        return replay
    try:
        with tx(db):
            record = outbound.return_outbound_items(db, record_id, payload)
            lost_items = (record.return_info or {}).get("lost_items", {})
        db.commit()
    except Exception:
        db.rollback()
        outbox.discard_enqueued(db)
        release_idempotency_lock(current_user.id, "POST", path, idempotency_key)
        raise
    dispatch_outbox(db)
    response = {"status": "ok", "record_id": record_id, "lost_items": lost_items}
    finalize_idempotency(current_user.id, "POST", path, idempotency_key, p_hash, response)
    return response


@app.delete("/outbound_records/{record_id}")
def delete_outbound_record(
    record_id: str,
    force: int = Query(default=0, ge=0, le=1),
    reconcile: int = Query(default=0, ge=0, le=1),
    _: bool = Depends(require_permission("outbound.delete")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        with tx(db):
            result = outbound.delete_outbound_record(
                db, record_id, force=bool(force), reconcile=bool(reconcile), operator=current_user.username
            )
        db.commit()
    except Exception:
        db.rollback()
        outbox.discard_enqueued(db)
        raise
    dispatch_outbox(db)
    return {"status": "deleted", **result}


@app.get("/printer_instances")
def list_printer_instances(
    printer_model: str | None = Query(default=None),
    _: bool = Depends(require_permission("printer_instances.read")),
    db: Session = Depends(get_db),
):
    rows = instances.list_printer_instances(db, printer_model)
    return {"items": [instance_out(i) for i in rows], "counts": instances.count_by_status(rows)}


@app.post("/printer_instances")
def create_printer_instance(
    payload: schemas.PrinterInstanceCreate,
    _: bool = Depends(require_permission("printer_instances.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        body = instance_out(instances.create_printer_instance(db, payload.model_dump()))
    db.commit()
    add_operation_log("新增", "printer_instance", payload.id, current_user.username, body)
    return body


@app.put("/printer_instances/{instance_id}")
def update_printer_instance(
    instance_id: str,
    payload: schemas.PrinterInstanceUpdate,
    _: bool = Depends(require_permission("printer_instances.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        body = instance_out(instances.update_printer_instance(db, instance_id, payload.model_dump(exclude_unset=True)))
    db.commit()
    add_operation_log("编辑", "printer_instance", instance_id, current_user.username, body)
    return body


@app.delete("/printer_instances/{instance_id}")
def delete_printer_instance(
    instance_id: str,
    _: bool = Depends(require_permission("printer_instances.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        instances.delete_printer_instance(db, instance_id)
    db.commit()
    add_operation_log("删除", "printer_instance", instance_id, current_user.username)
    return {"status": "deleted"}


def code_out(code: models.ConsumableCode) -> dict:
    return {
        "id": code.id,
        "code_type": code.code_type,
        "status": code.status,
        "bound_instance_id": code.bound_instance_id,
        "created_at": code.created_at.isoformat() if code.created_at else None,
    }


@app.post("/compatibility/check")
def check_compatibility(
    payload: schemas.CompatibilityCheck,
    _: bool = Depends(require_permission("printer_instances.read")),
    db: Session = Depends(get_db),
):
    result = compatibility.check_compatibility(db, payload.printer_model, payload.consumable, payload.code_type)
    return asdict(result)


@app.post("/compatibility/batch_check")
def batch_compatibility_check(
    payload: schemas.BatchCompatibilityCheck,
    _: bool = Depends(require_permission("printer_instances.read")),
    db: Session = Depends(get_db),
):
    result = compatibility.batch_compatibility_check(
        db, payload.printer_model, [(item.consumable, item.code_type) for item in payload.items]
    )
    return {"compatible": result["compatible"], "details": [asdict(d) for d in result["details"]]}


@app.get("/codes")
def list_codes(
    code_type: str | None = Query(default=None, pattern="^(专码|通码)$"),
    available: int = Query(default=0, ge=0, le=1),
    _: bool = Depends(require_permission("codes.read")),
    db: Session = Depends(get_db),
):
    return [code_out(c) for c in compatibility.list_codes(db, code_type, available_only=bool(available))]


@app.post("/codes")
def create_code(
    payload: schemas.ConsumableCodeCreate,
    _: bool = Depends(require_permission("codes.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with tx(db):
        body = code_out(compatibility.create_code(db, payload.model_dump()))
    db.commit()
    add_operation_log("新增", "consumable_code", payload.id, current_user.username, payload.model_dump())
    return body


@app.post("/codes/{code_id}/binding_check")
def check_code_binding(
    code_id: str,
    payload: schemas.CodeBindRequest,
    _: bool = Depends(require_permission("codes.read")),
    db: Session = Depends(get_db),
):
    return asdict(compatibility.check_code_binding(db, code_id, payload.instance_id))


@app.post("/codes/{code_id}/bind")
def bind_code(
    code_id: str,
    payload: schemas.CodeBindRequest,
    _: bool = Depends(require_permission("codes.write")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        with tx(db):
            body = code_out(compatibility.bind_code(db, code_id, payload.instance_id, operator=current_user.username))
        db.commit()
    except Exception:
        db.rollback()
        outbox.discard_enqueued(db)
        raise
    dispatch_outbox(db)
    return {"status": "ok", "code": body}


def _audit_query(
    action_type: str | None,
    entity_type: str | None,
    operator: str | None,
    start_date: date | None,
    end_date: date | None,
):
    stmt = select(models.OperationLog).order_by(models.OperationLog.id.desc())
    if action_type:
        stmt = stmt.where(models.OperationLog.action_type == action_type)
    if entity_type:
        stmt = stmt.where(models.OperationLog.entity_type == entity_type)
    if operator:
        stmt = stmt.where(models.OperationLog.operator == operator)
    if start_date:
        stmt = stmt.where(models.OperationLog.created_at >= datetime.combine(start_date, datetime.min.time()))
    if end_date:
        stmt = stmt.where(models.OperationLog.created_at < datetime.combine(end_date + timedelta(days=1), datetime.min.time()))
    return stmt


@app.get("/audit_logs")
def list_audit_logs(
    action_type: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    operator: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    _: bool = Depends(require_permission("audit.read")),
    db: Session = Depends(get_db),
):
    stmt = _audit_query(action_type, entity_type, operator, start_date, end_date)
    rows = db.scalars(stmt.offset((page - 1) * page_size).limit(page_size)).all()
    return [audit_out(r) for r in rows]


@app.get("/audit_logs/export")
def export_audit_logs(
    action_type: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    operator: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    _: bool = Depends(require_permission("audit.read")),
    db: Session = Depends(get_db),
):
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["时间", "操作人", "操作", "对象类型", "对象ID", "详情"])
    for log in db.scalars(_audit_query(action_type, entity_type, operator, start_date, end_date)).all():
        writer.writerow(
            [
                log.created_at.isoformat() if log.created_at else "",
                log.operator or "",
                log.action_type,
                log.entity_type,
                log.entity_id or "",
                log.details or "",
            ]
        )
    filename = f"audit_logs_{date.today().isoformat()}.csv"
    return Response(
        content="﻿" + buf.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/outbox_events")
def list_outbox_events(
    status: str | None = Query(default=None, pattern="^(pending|processing|done|failed)$"),
    _: bool = Depends(require_permission("outbox.dispatch")),
    db: Session = Depends(get_db),
):
    stmt = select(models.OutboxEvent).order_by(models.OutboxEvent.id.desc())
    if status:
        stmt = stmt.where(models.OutboxEvent.status == status)
    return db.scalars(stmt).all()


@app.post("/outbox/dispatch")
def dispatch_pending_events(_: bool = Depends(require_permission("outbox.dispatch"))):
    return outbox.dispatch_events(SessionLocal)
