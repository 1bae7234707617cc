def test_demo_devices_listed(demo):
    client, _, headers = demo
    rows = client.get("/devices", headers=headers).json()
    assert [d["id"] for d in rows] == ["dev-01", "dev-02", "dev-03", "dev-04", "dev-05"]

    offline = client.get("/devices", params={"status": "离线"}, headers=headers).json()
    assert [d["id"] for d in offline] == ["dev-04"]
    beijing = client.get("/devices", params={"keyword": "北京"}, headers=headers).json()
    assert [d["id"] for d in beijing] == ["dev-05"]


def test_setup_demo_runs_once(demo):
    client, _, headers = demo
    assert client.post("/setup/demo", headers=headers).json()["status"] == "exists"


def test_device_create_update_guards(demo):
    client, _, headers = demo
    body = {"id": "dev-06", "name": "设备06", "model": "魔镜7号", "printer_model": "DNP-锦联", "printer_paper": "6寸"}
    assert client.post("/devices", json=body, headers=headers).status_code == 200

    dup = client.post("/devices", json=body, headers=headers)
    assert dup.status_code == 400
    assert dup.json()["detail"] == "设备编号已存在"

    bad_model = client.post("/devices", json={"id": "dev-07", "name": "设备07", "printer_model": "HP-9000"}, headers=headers)
    assert bad_model.status_code == 400

    bad_status = client.post("/devices", json={"id": "dev-08", "name": "设备08", "status": "报废"}, headers=headers)
    assert bad_status.status_code == 422

    updated = client.put("/devices/dev-06", json={"status": "维护", "location": "苏州展厅"}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["status"] == "维护"
    assert updated.json()["location"] == "苏州展厅"
    assert updated.json()["name"] == "设备06"

    assert client.put("/devices/dev-99", json={"status": "维护"}, headers=headers).status_code == 404


def test_device_delete_blocked_by_open_record(demo):
    client, _, headers = demo
    created = client.post(
        "/outbound_records",
        json={"device_id": "dev-02", "destination": "南京展会", "operator": "李四"},
        headers=headers,
    )
    record_id = created.json()["record_id"]

    blocked = client.delete("/devices/dev-02", headers=headers)
    assert blocked.status_code == 400

    client.post(f"/outbound_records/{record_id}/return", json={"return_operator": "李四"}, headers=headers)
    assert client.delete("/devices/dev-02", headers=headers).status_code == 200
    assert client.get("/devices/dev-02", headers=headers).status_code == 404


def test_maintenance_logs(demo):
    client, _, headers = demo
    first = client.post(
        "/devices/dev-01/logs",
        json={"log_date": "2026-09-01", "type": "维护", "note": "清洁镜面", "executor": "张三"},
        headers=headers,
    )
    assert first.status_code == 200
    client.post("/devices/dev-01/logs", json={"log_date": "2026-10-01", "type": "耗材", "note": "更换墨盒"}, headers=headers)

    logs = client.get("/devices/dev-01/logs", headers=headers).json()
    assert [log["note"] for log in logs] == ["更换墨盒", "清洁镜面"]

    bad_type = client.post("/devices/dev-01/logs", json={"log_date": "2026-10-02", "type": "升级"}, headers=headers)
    assert bad_type.status_code == 422
    missing = client.post("/devices/dev-99/logs", json={"log_date": "2026-10-02", "type": "其他"}, headers=headers)
    assert missing.status_code == 404


def test_permission_required(client_and_db):
    client, _, headers = client_and_db
    assert client.get("/devices").status_code == 401

    client.post("/roles", json={"name": "viewer", "permission_codes": ["devices.read"]}, headers=headers)
    roles = {r["name"]: r["id"] for r in client.get("/roles", headers=headers).json()}
    client.post("/users", json={"username": "guest", "password": "pw", "role_ids": [roles["viewer"]]}, headers=headers)

    token = client.post("/auth/login", json={"username": "guest", "password": "pw"}).json()["token"]
    guest = {"Authorization": f"Bearer {token}"}
    assert client.get("/devices", headers=guest).status_code == 200
    assert client.get("/inventory", headers=guest).status_code == 403
    assert client.post("/outbound_records", json={"device_id": "dev-01", "destination": "x", "operator": "y"}, headers=guest).status_code == 403


def test_next_maintenance_update_is_audited(demo):
    client, _, headers = demo
    resp = client.put("/devices/dev-01", json={"next_maintenance": "2026-11-01"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["next_maintenance"] == "2026-11-01"

    logs = client.get("/audit_logs", params={"entity_type": "device"}, headers=headers).json()
    assert logs[0]["action_type"] == "编辑"
    assert logs[0]["details"] == {"next_maintenance": "2026-11-01"}


def test_update_rejects_null_for_required_fields(demo):
    client, _, headers = demo
    for field in ("name", "location", "owner", "status"):
        resp = client.put("/devices/dev-01", json={field: None}, headers=headers)
        assert resp.status_code == 422
    assert client.get("/devices/dev-01", headers=headers).json()["location"] == "杭州展厅A区"

    # nullable printer fields can still be cleared
    cleared = client.put("/devices/dev-01", json={"printer_connect": None}, headers=headers)
    assert cleared.status_code == 200
    assert cleared.json()["printer_connect"] is None


def test_logs_of_unknown_device(demo):
    client, _, headers = demo
    assert client.get("/devices/dev-99/logs", headers=headers).status_code == 404
    assert client.get("/devices/dev-01/logs", headers=headers).json() == []
