def _check(client, headers, printer_model, consumable, code_type):
    resp = client.post(
        "/compatibility/check",
        json={"printer_model": printer_model, "consumable": consumable, "code_type": code_type},
        headers=headers,
    )
    assert resp.status_code == 200
    return resp.json()


def _prepare_units_and_codes(client, headers):
    for instance_id, model in (("PR-E1", "EPSON-L8058"), ("PR-E2", "EPSON-L8058"), ("PR-D1", "DNP-锦联")):
        assert client.post("/printer_instances", json={"id": instance_id, "printer_model": model}, headers=headers).status_code == 200
    for code_id, code_type in (("ZM-1", "专码"), ("ZM-2", "专码"), ("TM-1", "通码")):
        assert client.post("/codes", json={"id": code_id, "code_type": code_type}, headers=headers).status_code == 200


def _bind(client, headers, code_id, instance_id):
    return client.post(f"/codes/{code_id}/bind", json={"instance_id": instance_id}, headers=headers)


def test_brand_and_consumable_rules(demo):
    client, _, headers = demo

    ok = _check(client, headers, "EPSON-L8058", "paper:EPSON-L8058:A4", "通码")
    assert ok == {"is_compatible": True, "reason": None, "brand": "EPSON"}

    dnp_universal = _check(client, headers, "DNP-自购", "paper:DNP-自购:6寸", "通码")
    assert dnp_universal["is_compatible"] is False
    assert dnp_universal["reason"] == "DNP打印机只支持专码，不支持通码"
    assert _check(client, headers, "DNP-自购", "paper:DNP-自购:6寸", "专码")["is_compatible"] is True

    assert _check(client, headers, "DNP-自购", "ink:C", "专码")["reason"] == "该耗材与打印机型号不兼容"
    assert _check(client, headers, "DNP-自购", "equipment:routers", "专码")["is_compatible"] is True
    assert _check(client, headers, "EPSON-L8058", "paper:EPSON-L8058:A3", "专码")["is_compatible"] is False
    assert _check(client, headers, "EPSON-L8058", "paper:DNP-自购:6寸", "专码")["is_compatible"] is False
    assert _check(client, headers, "HP-9000", "ink:C", "专码")["reason"] == "打印机型号不存在"


def test_batch_check_for_install_template(demo):
    client, _, headers = demo
    resp = client.post(
        "/compatibility/batch_check",
        json={
            "printer_model": "DNP-微印创",
            "items": [
                {"consumable": "paper:DNP-微印创:8寸", "code_type": "专码"},
                {"consumable": "equipment:usb_cables", "code_type": "通码"},
            ],
        },
        headers=headers,
    ).json()
    assert resp["compatible"] is False
    assert [d["is_compatible"] for d in resp["details"]] == [True, False]

    all_ok = client.post(
        "/compatibility/batch_check",
        json={"printer_model": "EPSON-L18058", "items": [{"consumable": "ink:K", "code_type": "通码"}]},
        headers=headers,
    ).json()
    assert all_ok["compatible"] is True


def test_dedicated_code_binding_rules(demo):
    client, _, headers = demo
    _prepare_units_and_codes(client, headers)

    first = _bind(client, headers, "ZM-1", "PR-E1")
    assert first.status_code == 200
    assert first.json()["code"]["status"] == "已发"
    assert first.json()["code"]["bound_instance_id"] == "PR-E1"
    # binding again to the same unit is allowed
    assert _bind(client, headers, "ZM-1", "PR-E1").status_code == 200

    check = client.post("/codes/ZM-1/binding_check", json={"instance_id": "PR-E2"}, headers=headers).json()
    assert check == {"can_bind": False, "reason": "该专码已绑定到其他打印机", "code_type": "专码"}
    moved = _bind(client, headers, "ZM-1", "PR-E2")
    assert moved.status_code == 400
    assert "该专码已绑定到其他打印机" in moved.json()["detail"]

    second = _bind(client, headers, "ZM-2", "PR-E1")
    assert second.status_code == 400
    assert "目标打印机已绑定其他专码" in second.json()["detail"]

    codes = {c["id"]: c for c in client.get("/codes", headers=headers).json()}
    assert codes["ZM-1"]["bound_instance_id"] == "PR-E1"
    assert codes["ZM-2"]["bound_instance_id"] is None
    assert codes["ZM-2"]["status"] == "未发"


def test_universal_code_rejected_by_dnp(demo):
    client, _, headers = demo
    _prepare_units_and_codes(client, headers)

    dnp = _bind(client, headers, "TM-1", "PR-D1")
    assert dnp.status_code == 400
    assert "DNP打印机只支持专码" in dnp.json()["detail"]

    assert _bind(client, headers, "TM-1", "PR-E2").status_code == 200
    assert _bind(client, headers, "ZM-2", "PR-D1").status_code == 200

    available = client.get("/codes", params={"available": 1}, headers=headers).json()
    assert [c["id"] for c in available] == ["ZM-1"]
    dedicated = client.get("/codes", params={"code_type": "专码"}, headers=headers).json()
    assert sorted(c["id"] for c in dedicated) == ["ZM-1", "ZM-2"]


def test_binding_guards_and_audit(demo):
    client, _, headers = demo
    _prepare_units_and_codes(client, headers)

    assert _bind(client, headers, "ZM-404", "PR-E1").status_code == 404
    assert _bind(client, headers, "ZM-1", "PR-404").status_code == 404
    assert client.post("/codes", json={"id": "ZM-1", "code_type": "专码"}, headers=headers).status_code == 400
    assert client.post("/codes", json={"id": "ZM-9", "code_type": "其他"}, headers=headers).status_code == 422

    _bind(client, headers, "ZM-1", "PR-E1")
    blocked = client.delete("/printer_instances/PR-E1", headers=headers)
    assert blocked.status_code == 400

    logs = client.get("/audit_logs", params={"action_type": "绑定码"}, headers=headers).json()
    assert len(logs) == 1
    assert logs[0]["entity_id"] == "ZM-1"
    assert logs[0]["details"]["instance_id"] == "PR-E1"
