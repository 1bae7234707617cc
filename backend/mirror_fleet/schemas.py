from datetime import date
from pydantic import BaseModel, Field, field_validator

INK_COLORS = ("C", "M", "Y", "K")
EQUIPMENT_KEYS = ("routers", "power_strips", "usb_cables", "network_cables", "adapters")


class OutboundItems(BaseModel):
    printer_model: str | None = None
    paper_type: str | None = None
    paper_quantity: int | None = Field(default=None, ge=0)
    ink_c: int | None = Field(default=None, ge=0)
    ink_m: int | None = Field(default=None, ge=0)
    ink_y: int | None = Field(default=None, ge=0)
    ink_k: int | None = Field(default=None, ge=0)
    routers: int | None = Field(default=None, ge=0)
    power_strips: int | None = Field(default=None, ge=0)
    usb_cables: int | None = Field(default=None, ge=0)
    network_cables: int | None = Field(default=None, ge=0)
    adapters: int | None = Field(default=None, ge=0)


class InventorySnapshot(BaseModel):
    location: str
    last_updated: str
    version: int = 0
    paper_stock: dict[str, dict[str, int]] = {}
    epson_ink_stock: dict[str, int] = {}
    equipment_stock: dict[str, int] = {}
    notes: str | None = None


class InventoryUpdate(BaseModel):
    location: str | None = None
    notes: str | None = None
    paper_stock: dict[str, dict[str, int]] | None = None
    epson_ink_stock: dict[str, int] | None = None
    equipment_stock: dict[str, int] | None = None
    expected_version: int | None = Field(default=None, ge=0)


class OutboundCreate(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)
    destination: str = Field(..., min_length=1, max_length=128)
    operator: str = Field(..., min_length=1, max_length=64)
    items: OutboundItems = Field(default_factory=OutboundItems)
    notes: str | None = None
    device_instance_id: str | None = None


class OutboundReturn(BaseModel):
    return_operator: str = Field(..., min_length=1, max_length=64)
    returned_items: OutboundItems = Field(default_factory=OutboundItems)
    equipment_damage: str | None = None
    return_notes: str | None = None


class DeviceCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    model: str = ""
    serial: str = ""
    os: str = ""
    location: str = ""
    owner: str = ""
    status: str = Field("运行中", pattern="^(运行中|离线|维护)$")
    printer_model: str | None = None
    printer_paper: str | None = None
    printer_connect: str | None = Field(default=None, pattern="^(USB|Wi-Fi)$")
    next_maintenance: date | None = None


class DeviceUpdate(BaseModel):
    name: str | None = None
    model: str | None = None
    serial: str | None = None
    os: str | None = None
    location: str | None = None
    owner: str | None = None
    status: str | None = Field(default=None, pattern="^(运行中|离线|维护)$")
    printer_model: str | None = None
    printer_paper: str | None = None
    printer_connect: str | None = Field(default=None, pattern="^(USB|Wi-Fi)$")
    next_maintenance: date | None = None

    @field_validator("name", "model", "serial", "os", "location", "owner", "status")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("不能为空")
        return value


class MaintenanceLogCreate(BaseModel):
    log_date: date
    type: str = Field(..., pattern="^(维护|故障|耗材|其他)$")
    note: str = ""
    executor: str | None = None


class PrinterModelCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=128)
    brand: str = ""
    paper_types: list[str] = []


class PrinterInstanceCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    printer_model: str = Field(..., min_length=1, max_length=64)
    serial_number: str | None = None
    status: str = Field("in-house", pattern="^(in-house|deployed|idle)$")
    location: str = ""
    deployed_date: date | None = None
    notes: str | None = None


class PrinterInstanceUpdate(BaseModel):
    printer_model: str | None = None
    serial_number: str | None = None
    status: str | None = Field(default=None, pattern="^(in-house|deployed|idle)$")
    location: str | None = None
    deployed_date: date | None = None
    notes: str | None = None


class CompatibilityItem(BaseModel):
    consumable: str = Field(..., min_length=1, max_length=128)
    code_type: str = Field(..., pattern="^(专码|通码)$")


class CompatibilityCheck(CompatibilityItem):
    printer_model: str = Field(..., min_length=1, max_length=64)


class BatchCompatibilityCheck(BaseModel):
    printer_model: str = Field(..., min_length=1, max_length=64)
    items: list[CompatibilityItem] = []


class ConsumableCodeCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    code_type: str = Field(..., pattern="^(专码|通码)$")


class CodeBindRequest(BaseModel):
    instance_id: str = Field(..., min_length=1, max_length=64)


class LoginRequest(BaseModel):
    username: str
    password: str


class UserCreate(BaseModel):
    username: str
    password: str
    role_ids: list[int] = []
    is_active: int = 1


class RoleCreate(BaseModel):
    name: str
    description: str = ""
    permission_codes: list[str] = []
