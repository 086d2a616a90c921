# tests/domains/test_api_n.py

"""
HTTP 엔드포인트 통합 테스트 모듈입니다.

- 도메인 예외가 {"error": {code, message, class, retryable}} 형식과 올바른 상태 코드로 변환되는지 검증.
- 인증 없는 요청(401)과 역할 거부(403).
- 시료 접수부터 성적서 확정까지의 API 흐름.
"""

import pytest

from labflow import API_PREFIX
from labflow.domains.rpt import finalization

LIMS = f"{API_PREFIX}/lims"
RPT = f"{API_PREFIX}/rpt"


# =============================================================================
# 1. 인증 / 권한
# =============================================================================
@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    response = await client.post(f"{LIMS}/samples", json={"sample_code": "S-API-0", "sample_type": "water"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(client):
    response = await client.get(f"{LIMS}/samples/1", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_forbidden_error_body(client_factory, analyst_actor):
    async with client_factory(analyst_actor) as client:
        response = await client.post(f"{LIMS}/samples", json={"sample_code": "S-API-1", "sample_type": "water"})

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "FORBIDDEN"
    assert error["class"] == "authorization"
    assert error["retryable"] is False


@pytest.mark.asyncio
async def test_not_found_error_body(client_factory, collector_actor):
    async with client_factory(collector_actor) as client:
        response = await client.get(f"{LIMS}/samples/9999")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


# =============================================================================
# 2. 시료 / 상태 전이
# =============================================================================
@pytest.mark.asyncio
async def test_register_and_invalid_transition(client_factory, collector_actor):
    async with client_factory(collector_actor) as client:
        created = await client.post(
            f"{LIMS}/samples", json={"sample_code": "S-API-2", "sample_type": "water", "priority": 2}
        )
        assert created.status_code == 201
        sample = created.json()
        assert sample["status"] == "received"
        assert sample["received_by"] == collector_actor.user_id

        duplicate = await client.post(f"{LIMS}/samples", json={"sample_code": "S-API-2", "sample_type": "water"})
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "CONFLICT"

        skipped = await client.post(
            f"{LIMS}/samples/{sample['id']}/transition", json={"target_status": "validated"}
        )
        assert skipped.status_code == 409
        error = skipped.json()["error"]
        assert error["code"] == "INVALID_TRANSITION"
        assert error["class"] == "business_rule"

        moved = await client.post(
            f"{LIMS}/samples/{sample['id']}/transition", json={"target_status": "in_progress"}
        )
        assert moved.status_code == 200
        assert moved.json() == {
            "entity": "sample",
            "entity_id": sample["id"],
            "from_state": "received",
            "to_state": "in_progress",
            "changed": True,
        }


@pytest.mark.asyncio
async def test_unknown_target_status_is_422(client_factory, collector_actor):
    async with client_factory(collector_actor) as client:
        response = await client.post(f"{LIMS}/samples/1/transition", json={"target_status": "archived"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_sibling_gate_error_body(client_factory, admin_actor, collector_actor, analyst_actor, om_actor):
    async with client_factory(admin_actor) as client:
        p1 = (await client.post(f"{LIMS}/parameters", json={"code": "PH", "name": "pH"})).json()
        p2 = (await client.post(f"{LIMS}/parameters", json={"code": "TURB", "name": "Turbidity", "unit": "NTU"})).json()

    async with client_factory(collector_actor) as client:
        sample = (await client.post(f"{LIMS}/samples", json={"sample_code": "S-API-3", "sample_type": "water"})).json()
        t1 = (await client.post(f"{LIMS}/samples/{sample['id']}/tests", json={"parameter_id": p1["id"]})).json()
        t2 = (await client.post(f"{LIMS}/samples/{sample['id']}/tests", json={"parameter_id": p2["id"]})).json()
        assert t1["status"] == "assigned"

    async with client_factory(analyst_actor) as client:
        result = await client.post(
            f"{LIMS}/sample-tests/{t1['id']}/results", json={"value_final": "7.2", "unit": "pH"}
        )
        assert result.status_code == 201
        assert result.json()["version"] == 1
        measured = await client.post(f"{LIMS}/sample-tests/{t1['id']}/transition", json={"target_status": "measured"})
        assert measured.status_code == 200

    async with client_factory(om_actor) as client:
        blocked = await client.post(f"{LIMS}/sample-tests/{t1['id']}/decision", json={"decision": "approve"})

    assert blocked.status_code == 422
    error = blocked.json()["error"]
    assert error["code"] == "PRECONDITION_FAILED"
    assert f"Sibling test {t2['id']}" in error["message"]
    assert error["details"]["sample_test_id"] == t2["id"]


# =============================================================================
# 3. 정도관리 (QC)
# =============================================================================
@pytest.mark.asyncio
async def test_qc_control_and_runs(client_factory, qa_actor, analyst_actor):
    async with client_factory(qa_actor) as client:
        invalid = await client.post(f"{LIMS}/qc/controls", json={"name": "Zero", "target": 0, "tolerance": 0})
        assert invalid.status_code == 422

        control = await client.post(f"{LIMS}/qc/controls", json={"name": "Level 1", "target": 0, "tolerance": 1})
        assert control.status_code == 201
        control_id = control.json()["id"]
        assert control.json()["ruleset"] == ["1-2s", "1-3s", "R-4s"]

    async with client_factory(analyst_actor) as client:
        warning = await client.post(
            f"{LIMS}/qc/runs", json={"batch_id": "B-API", "qc_control_id": control_id, "value": 2.1}
        )
        assert warning.status_code == 201
        assert warning.json()["status"] == "warning"
        assert warning.json()["violations"] == ["1-2s"]

        failed = await client.post(
            f"{LIMS}/qc/runs", json={"batch_id": "B-API", "qc_control_id": control_id, "value": -2.2}
        )
        assert failed.json()["status"] == "fail"
        assert "R-4s" in failed.json()["violations"]

        summary = await client.get(f"{LIMS}/qc/batches/B-API/summary")
        assert summary.status_code == 200
        assert summary.json()["counts"] == {"pass": 0, "warning": 0, "fail": 2}
        assert summary.json()["open_fail"] is True


# =============================================================================
# 4. 성적서 (Report)
# =============================================================================
@pytest.mark.asyncio
async def test_report_generation_precondition(client_factory, collector_actor, lh_actor):
    async with client_factory(collector_actor) as client:
        sample = (await client.post(f"{LIMS}/samples", json={"sample_code": "S-API-4", "sample_type": "swab"})).json()

    async with client_factory(lh_actor) as client:
        response = await client.post(f"{RPT}/samples/{sample['id']}/reports")

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "PRECONDITION_FAILED"


@pytest.mark.asyncio
async def test_generate_and_finalize_report(
    client_factory, validated_sample, lh_specimen, lh_actor, analyst_actor, storage, monkeypatch
):
    monkeypatch.setattr(finalization, "get_storage", lambda: storage)
    sample_id = validated_sample["sample_id"]

    async with client_factory(analyst_actor) as client:
        forbidden = await client.post(f"{RPT}/samples/{sample_id}/reports")
        assert forbidden.status_code == 403

    async with client_factory(lh_actor) as client:
        created = await client.post(f"{RPT}/samples/{sample_id}/reports")
        assert created.status_code == 201
        report = created.json()
        assert report["is_locked"] is False
        assert len(report["items"]) == 2
        assert [s["role_code"] for s in report["signatures"]] == ["OM", "LH"]

        finalized = await client.post(f"{RPT}/reports/{report['id']}/finalize", json={"template_code": "wgs"})
        assert finalized.status_code == 200
        body = finalized.json()
        assert body["report_no"] == report["report_no"]
        assert body["template_code"] == "COA_WGS"
        assert await storage.exists(body["pdf_url"])

        again = await client.post(f"{RPT}/reports/{report['id']}/finalize", json={})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "CONFLICT"
        assert again.json()["error"]["retryable"] is True

        regenerate = await client.post(f"{RPT}/samples/{sample_id}/reports")
        assert regenerate.status_code == 409
        assert regenerate.json()["error"]["code"] == "ALREADY_FINALIZED"

        fetched = await client.get(f"{RPT}/reports/{report['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["is_locked"] is True
        lh_slot = next(s for s in fetched.json()["signatures"] if s["role_code"] == "LH")
        assert lh_slot["signed_by"] == lh_actor.user_id

        sample = await client.get(f"{LIMS}/samples/{sample_id}")
        assert sample.json()["status"] == "reported"


@pytest.mark.asyncio
async def test_register_signature_specimen_endpoint(client_factory, admin_actor, lh_actor):
    payload = {"user_id": lh_actor.user_id, "role_code": "lh", "image_ref": "signatures/5.png"}

    async with client_factory(lh_actor) as client:
        assert (await client.post(f"{RPT}/signature-specimens", json=payload)).status_code == 403

    async with client_factory(admin_actor) as client:
        response = await client.post(f"{RPT}/signature-specimens", json=payload)

    assert response.status_code == 201
    assert response.json()["role_code"] == "LH"
    assert response.json()["is_active"] is True


@pytest.mark.asyncio
async def test_read_unknown_report(client_factory, lh_actor):
    async with client_factory(lh_actor) as client:
        response = await client.get(f"{RPT}/reports/9999")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
