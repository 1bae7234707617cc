"""Business rule violations raised by the service modules.

Each error carries the message shown to the operator and the HTTP status
the API layer answers with. Persistence errors are not wrapped here; they
propagate as SQLAlchemy exceptions.
"""


class FleetError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DeviceNotFound(FleetError):
    status_code = 404

    def __init__(self, device_id: str | None = None):
        super().__init__("设备不存在")
        self.device_id = device_id


class OutboundAlreadyOpen(FleetError):
    def __init__(self, outbound_date: str | None = None, destination: str | None = None):
        if outbound_date or destination:
            message = (
                f"该设备已有未归还的出库记录（出库时间: {outbound_date}, 目的地: {destination}），请先归还后再出库"
            )
        else:
            message = "该设备已有未归还的出库记录，请先归还后再出库"
        super().__init__(message)
        self.outbound_date = outbound_date
        self.destination = destination


class InsufficientStock(FleetError):
    def __init__(self, detail: str):
        super().__init__(f"库存不足: {detail}")
        self.detail = detail


class OutboundRecordNotFound(FleetError):
    status_code = 404

    def __init__(self):
        super().__init__("出库记录不存在")


class OutboundAlreadyReturned(FleetError):
    def __init__(self):
        super().__init__("该记录已归还")


class ReturnExceedsOutbound(FleetError):
    def __init__(self, field: str, returned: int, taken: int):
        super().__init__(f"归还数量不能超过出库数量 ({field}: 归还 {returned}, 出库 {taken})")


class OpenRecordDeleteRefused(FleetError):
    def __init__(self):
        super().__init__("该出库记录尚未归还，删除前请选择强制删除(force)或对账删除(reconcile)")


class UnknownStockKey(FleetError):
    def __init__(self, printer_model: str, paper_type: str | None = None):
        if paper_type is None:
            message = f"打印机型号未登记: {printer_model}"
        else:
            message = f"相纸类型未登记: {printer_model} {paper_type}"
        super().__init__(message)


class PrinterInstanceNotFound(FleetError):
    status_code = 404

    def __init__(self, instance_id: str):
        super().__init__(f"打印机实例不存在: {instance_id}")
        self.instance_id = instance_id


class InventoryVersionConflict(FleetError):
    status_code = 409

    def __init__(self, expected_version: int | None = None):
        super().__init__("库存已被其他操作修改，请刷新后重试")
        self.expected_version = expected_version


class CodeNotFound(FleetError):
    status_code = 404

    def __init__(self, code_id: str):
        super().__init__(f"码不存在: {code_id}")
        self.code_id = code_id


class CodeBindingRefused(FleetError):
    def __init__(self, reason: str):
        super().__init__(f"码绑定检查失败: {reason}")
        self.reason = reason
