from mirror_fleet import schemas, stock


def _snapshot(**overrides):
    data = {
        "location": "杭州调试间",
        "last_updated": "2026-10-01",
        "paper_stock": {"EPSON-L8058": {"A4": 80}, "DNP-自购": {"6寸": 10}},
        "epson_ink_stock": {"C": 2, "M": 5, "Y": 5, "K": 5},
        "equipment_stock": {"routers": 1, "power_strips": 3},
    }
    data.update(overrides)
    return schemas.InventorySnapshot(**data)


def test_sufficient_bag_passes():
    items = schemas.OutboundItems(printer_model="EPSON-L8058", paper_type="A4", paper_quantity=80, ink_c=2, routers=1)
    result = stock.check_stock(_snapshot(), items)
    assert result.sufficient
    assert result.message is None


def test_empty_bag_always_passes():
    assert stock.check_stock(_snapshot(paper_stock={}, epson_ink_stock={}, equipment_stock={}), schemas.OutboundItems()).sufficient


def test_first_shortage_is_reported():
    # both paper and ink are short; paper is checked first
    items = schemas.OutboundItems(printer_model="EPSON-L8058", paper_type="A4", paper_quantity=81, ink_c=3)
    result = stock.check_stock(_snapshot(), items)
    assert not result.sufficient
    assert result.message == "EPSON-L8058 A4 库存不足 (需要: 81, 可用: 80)"


def test_ink_and_equipment_messages():
    ink = stock.check_stock(_snapshot(), schemas.OutboundItems(ink_c=3))
    assert ink.message == "墨水C库存不足 (需要: 3, 可用: 2)"

    equipment = stock.check_stock(_snapshot(), schemas.OutboundItems(power_strips=4))
    assert equipment.message == "插板库存不足 (需要: 4, 可用: 3)"


def test_missing_key_counts_as_zero():
    items = schemas.OutboundItems(printer_model="DNP-锦联", paper_type="8寸", paper_quantity=1, usb_cables=1)
    result = stock.check_stock(_snapshot(), items)
    assert not result.sufficient
    assert "可用: 0" in result.message


def test_paper_without_type_is_not_checked():
    items = schemas.OutboundItems(printer_model="EPSON-L8058", paper_quantity=500)
    assert stock.check_stock(_snapshot(), items).sufficient


def test_check_does_not_touch_snapshot():
    snapshot = _snapshot()
    before = snapshot.model_dump()
    items = schemas.OutboundItems(printer_model="EPSON-L8058", paper_type="A4", paper_quantity=5, ink_m=1)
    first = stock.check_stock(snapshot, items)
    second = stock.check_stock(snapshot, items)
    assert first == second
    assert snapshot.model_dump() == before


def test_alerts_thresholds():
    alerts = stock.stock_alerts(_snapshot(), display_names={"EPSON-L8058": "EPSON L8058 (A4)"})
    assert alerts["paper_low"] is True
    assert alerts["ink_low"] is True
    assert "EPSON L8058 (A4) A4相纸库存不足 (80张)" in alerts["details"]
    assert "EPSON 青色墨水库存不足 (2瓶)" in alerts["details"]


def test_alerts_skip_ink_for_dnp_models():
    alerts = stock.stock_alerts(_snapshot(), printer_model="DNP-自购")
    assert alerts["paper_low"] is True
    assert alerts["ink_low"] is False
    assert all("墨水" not in line for line in alerts["details"])
