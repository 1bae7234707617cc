from concurrent.futures import ThreadPoolExecutor

import pytest

from sqlalchemy import select

from mirror_fleet import main, models, schemas, stock
from mirror_fleet.errors import InsufficientStock


def _set_a4(client, headers, qty):
    resp = client.put("/inventory", json={"paper_stock": {"EPSON-L8058": {"A4": qty}}}, headers=headers)
    assert resp.status_code == 200


def _a4(client, headers):
    return client.get("/inventory", headers=headers).json()["paper_stock"]["EPSON-L8058"]["A4"]


def _outbound(client, headers, device_id="dev-05", destination="上海展厅", operator="孙七", key=None, instance_id=None, **items):
    body = {"device_id": device_id, "destination": destination, "operator": operator, "items": items}
    if instance_id:
        body["device_instance_id"] = instance_id
    extra = {"Idempotency-Key": key} if key else {}
    return client.post("/outbound_records", json=body, headers={**headers, **extra})


def test_outbound_and_partial_return(demo):
    client, _, headers = demo
    _set_a4(client, headers, 80)

    created = _outbound(client, headers, printer_model="EPSON-L8058", paper_type="A4", paper_quantity=30)
    assert created.status_code == 200
    record_id = created.json()["record_id"]

    record = client.get(f"/outbound_records/{record_id}", headers=headers).json()
    assert record["status"] == "outbound"
    assert record["original_location"] == "北京展厅A区"
    assert record["original_owner"] == "孙七"
    assert _a4(client, headers) == 50

    device = client.get("/devices/dev-05", headers=headers).json()
    assert device["location"] == "上海展厅"
    assert device["open_outbound_id"] == record_id

    again = _outbound(client, headers, printer_model="EPSON-L8058", paper_type="A4", paper_quantity=1)
    assert again.status_code == 400
    assert "上海展厅" in again.json()["detail"]
    assert _a4(client, headers) == 50

    returned = client.post(
        f"/outbound_records/{record_id}/return",
        json={"return_operator": "孙七", "returned_items": {"paper_quantity": 25}},
        headers=headers,
    )
    assert returned.status_code == 200
    assert returned.json()["lost_items"] == {"paper_quantity": 5, "printer_model": "EPSON-L8058", "paper_type": "A4"}
    assert _a4(client, headers) == 75

    record = client.get(f"/outbound_records/{record_id}", headers=headers).json()
    assert record["status"] == "returned"
    assert record["return_info"]["returned_items"]["paper_type"] == "A4"
    assert record["return_info"]["return_operator"] == "孙七"

    device = client.get("/devices/dev-05", headers=headers).json()
    assert device["location"] == "北京展厅A区"
    assert device["owner"] == "孙七"
    assert device["open_outbound_id"] is None

    moves = client.get("/stock_moves", params={"ref_id": record_id}, headers=headers).json()
    by_type = {m["move_type"]: m["qty"] for m in moves}
    assert by_type == {"OUTBOUND": -30, "RETURN": 25, "RETURN_LOSS": -5}


def test_returned_record_is_terminal(demo):
    client, _, headers = demo
    record_id = _outbound(client, headers, routers=2).json()["record_id"]
    body = {"return_operator": "孙七", "returned_items": {"routers": 2}}

    assert client.post(f"/outbound_records/{record_id}/return", json=body, headers=headers).status_code == 200
    second = client.post(f"/outbound_records/{record_id}/return", json=body, headers=headers)
    assert second.status_code == 400
    assert second.json()["detail"] == "该记录已归还"
    assert client.get("/inventory", headers=headers).json()["equipment_stock"]["routers"] == 10

    # a new outbound is allowed once the previous one is closed
    assert _outbound(client, headers, routers=1).status_code == 200


def test_insufficient_stock_changes_nothing(demo):
    client, _, headers = demo
    before = client.get("/inventory", headers=headers).json()

    resp = _outbound(client, headers, printer_model="EPSON-L8058", paper_type="A4", paper_quantity=10, ink_c=99)
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("库存不足: 墨水C库存不足")

    after = client.get("/inventory", headers=headers).json()
    assert after["paper_stock"] == before["paper_stock"]
    assert after["epson_ink_stock"] == before["epson_ink_stock"]
    assert client.get("/outbound_records", headers=headers).json() == []
    assert client.get("/devices/dev-05", headers=headers).json()["location"] == "北京展厅A区"
    assert client.get("/stock_moves", headers=headers).json() == []


def test_unknown_device_rejected(demo):
    client, _, headers = demo
    resp = _outbound(client, headers, device_id="dev-99")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "设备不存在"


def test_full_return_conserves_stock(demo):
    client, _, headers = demo
    before = client.get("/inventory", headers=headers).json()
    items = {"printer_model": "EPSON-L8058", "paper_type": "A4", "paper_quantity": 40, "ink_c": 1, "ink_k": 2, "usb_cables": 3}
    record_id = _outbound(client, headers, **items).json()["record_id"]

    mid = client.get("/inventory", headers=headers).json()
    assert mid["paper_stock"]["EPSON-L8058"]["A4"] == 410
    assert mid["epson_ink_stock"]["K"] == 10
    assert mid["equipment_stock"]["usb_cables"] == 17

    resp = client.post(
        f"/outbound_records/{record_id}/return",
        json={"return_operator": "孙七", "returned_items": {k: v for k, v in items.items() if k not in ("printer_model", "paper_type")}},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["lost_items"] == {}

    after = client.get("/inventory", headers=headers).json()
    assert after["paper_stock"] == before["paper_stock"]
    assert after["epson_ink_stock"] == before["epson_ink_stock"]
    assert after["equipment_stock"] == before["equipment_stock"]


def test_return_more_than_taken_rejected(demo):
    client, _, headers = demo
    record_id = _outbound(client, headers, printer_model="EPSON-L8058", paper_type="A4", paper_quantity=5).json()["record_id"]

    over = client.post(
        f"/outbound_records/{record_id}/return",
        json={"return_operator": "孙七", "returned_items": {"paper_quantity": 6}},
        headers=headers,
    )
    assert over.status_code == 400

    wrong_paper = client.post(
        f"/outbound_records/{record_id}/return",
        json={"return_operator": "孙七", "returned_items": {"printer_model": "EPSON-L18058", "paper_type": "A3", "paper_quantity": 1}},
        headers=headers,
    )
    assert wrong_paper.status_code == 400

    assert client.get(f"/outbound_records/{record_id}", headers=headers).json()["status"] == "outbound"
    assert _a4(client, headers) == 445


def test_owner_falls_back_to_company(demo):
    client, _, headers = demo
    created = client.post("/devices", json={"id": "dev-x1", "name": "临时设备", "location": "仓库"}, headers=headers)
    assert created.status_code == 200

    record_id = _outbound(client, headers, device_id="dev-x1", destination="广州展会", operator="周八").json()["record_id"]
    device = client.get("/devices/dev-x1", headers=headers).json()
    assert device["owner"] == "周八"

    client.post(f"/outbound_records/{record_id}/return", json={"return_operator": "周八"}, headers=headers)
    device = client.get("/devices/dev-x1", headers=headers).json()
    assert device["location"] == "仓库"
    assert device["owner"] == "公司"


def test_idempotent_outbound(demo):
    client, _, headers = demo
    first = _outbound(client, headers, key="ob-1", paper_quantity=10, printer_model="EPSON-L8058", paper_type="A4")
    second = _outbound(client, headers, key="ob-1", paper_quantity=10, printer_model="EPSON-L8058", paper_type="A4")
    assert first.status_code == 200
    assert second.json() == first.json()
    assert len(client.get("/outbound_records", headers=headers).json()) == 1
    assert _a4(client, headers) == 440

    changed = _outbound(client, headers, key="ob-1", paper_quantity=11, printer_model="EPSON-L8058", paper_type="A4")
    assert changed.status_code == 409


def test_list_records_filters(demo):
    client, _, headers = demo
    r1 = _outbound(client, headers, device_id="dev-01").json()["record_id"]
    _outbound(client, headers, device_id="dev-02")
    client.post(f"/outbound_records/{r1}/return", json={"return_operator": "张三"}, headers=headers)

    open_records = client.get("/outbound_records", params={"status": "outbound"}, headers=headers).json()
    assert [r["device_id"] for r in open_records] == ["dev-02"]
    by_device = client.get("/outbound_records", params={"device_id": "dev-01"}, headers=headers).json()
    assert [r["id"] for r in by_device] == [r1]


def test_delete_open_record_requires_flag(demo):
    client, _, headers = demo
    record_id = _outbound(client, headers, printer_model="EPSON-L8058", paper_type="A4", paper_quantity=50).json()["record_id"]

    refused = client.delete(f"/outbound_records/{record_id}", headers=headers)
    assert refused.status_code == 400
    assert client.get(f"/outbound_records/{record_id}", headers=headers).status_code == 200

    forced = client.delete(f"/outbound_records/{record_id}", params={"force": 1}, headers=headers)
    assert forced.status_code == 200
    assert forced.json()["was_open"] is True
    assert forced.json()["reconciled"] is False
    assert client.get(f"/outbound_records/{record_id}", headers=headers).status_code == 404
    # force delete leaves stock and custody as they were
    assert _a4(client, headers) == 400
    assert client.get("/devices/dev-05", headers=headers).json()["location"] == "上海展厅"


def test_reconcile_delete_restores_state(demo):
    client, _, headers = demo
    record_id = _outbound(client, headers, printer_model="EPSON-L8058", paper_type="A4", paper_quantity=50, routers=1).json()["record_id"]

    resp = client.delete(f"/outbound_records/{record_id}", params={"reconcile": 1}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["reconciled"] is True
    assert _a4(client, headers) == 450
    assert client.get("/inventory", headers=headers).json()["equipment_stock"]["routers"] == 10
    device = client.get("/devices/dev-05", headers=headers).json()
    assert device["location"] == "北京展厅A区"
    assert device["owner"] == "孙七"

    # the device can go out again
    assert _outbound(client, headers).status_code == 200


def test_delete_returned_record(demo):
    client, _, headers = demo
    record_id = _outbound(client, headers).json()["record_id"]
    client.post(f"/outbound_records/{record_id}/return", json={"return_operator": "孙七"}, headers=headers)
    resp = client.delete(f"/outbound_records/{record_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["was_open"] is False
    assert client.delete(f"/outbound_records/{record_id}", headers=headers).status_code == 404


def test_outbound_is_audited(demo):
    client, _, headers = demo
    record_id = _outbound(client, headers, routers=1).json()["record_id"]
    client.post(f"/outbound_records/{record_id}/return", json={"return_operator": "孙七", "returned_items": {"routers": 1}}, headers=headers)

    logs = client.get("/audit_logs", params={"entity_type": "outbound_record"}, headers=headers).json()
    assert [log["action_type"] for log in logs] == ["归还", "出库"]
    assert all(log["entity_id"] == record_id for log in logs)
    assert logs[1]["details"]["original_location"] == "北京展厅A区"
    assert logs[1]["operator"] == "孙七"

    export = client.get("/audit_logs/export", params={"entity_type": "outbound_record"}, headers=headers)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "出库" in export.text
    assert "归还" in export.text


def test_concurrent_outbound_same_device(demo):
    client, session_factory, headers = demo

    def worker(i: int):
        with session_factory() as db:
            user = db.scalar(select(models.User).where(models.User.username == "admin"))
            try:
                main.create_outbound_record(
                    payload=schemas.OutboundCreate(
                        device_id="dev-03",
                        destination=f"展会{i}",
                        operator="王五",
                        items=schemas.OutboundItems(printer_model="EPSON-L8058", paper_type="A4", paper_quantity=10),
                    ),
                    _=True,
                    current_user=user,
                    idempotency_key=None,
                    db=db,
                )
            except Exception:
                return False
            return True

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(worker, range(8)))

    assert results.count(True) == 1
    open_records = client.get("/outbound_records", params={"status": "outbound", "device_id": "dev-03"}, headers=headers).json()
    assert len(open_records) == 1
    assert _a4(client, headers) == 440


def _routers(client, headers):
    return client.get("/inventory", headers=headers).json()["equipment_stock"]["routers"]


def test_concurrent_outbound_cannot_oversell(demo):
    client, session_factory, headers = demo
    client.put("/inventory", json={"equipment_stock": {"routers": 3}}, headers=headers)
    device_ids = ["dev-01", "dev-02", "dev-03", "dev-04", "dev-05"]

    def worker(device_id: str):
        with session_factory() as db:
            user = db.scalar(select(models.User).where(models.User.username == "admin"))
            try:
                main.create_outbound_record(
                    payload=schemas.OutboundCreate(
                        device_id=device_id,
                        destination="杭州车展",
                        operator="王五",
                        items=schemas.OutboundItems(routers=1),
                    ),
                    _=True,
                    current_user=user,
                    idempotency_key=None,
                    db=db,
                )
            except InsufficientStock:
                return "short"
            except Exception:
                return "error"
            return "ok"

    with ThreadPoolExecutor(max_workers=len(device_ids)) as pool:
        results = list(pool.map(worker, device_ids))

    remaining = _routers(client, headers)
    assert remaining >= 0
    assert results.count("ok") == 3 - remaining
    assert results.count("ok") >= 1
    assert results.count("ok") + results.count("short") + results.count("error") == len(device_ids)
    open_records = client.get("/outbound_records", params={"status": "outbound"}, headers=headers).json()
    assert len(open_records) == results.count("ok")
    moves = [m for m in client.get("/stock_moves", headers=headers).json() if m["move_type"] == "OUTBOUND"]
    assert sum(m["qty"] for m in moves) == -results.count("ok")


def test_conditional_decrement_refuses_short_row(demo):
    _, session_factory, _ = demo
    with session_factory() as db:
        with pytest.raises(InsufficientStock) as exc:
            stock.apply_stock_delta(db, schemas.OutboundItems(ink_c=1, routers=11), -1, "OUTBOUND")
        assert "路由器库存不足 (需要: 11, 可用: 10)" in str(exc.value)
        db.rollback()

    with session_factory() as db:
        levels = {row.stock_key: row.quantity for row in db.scalars(select(models.StockItem)).all()}
    assert levels["ink:C"] == 8
    assert levels["equipment:routers"] == 10
