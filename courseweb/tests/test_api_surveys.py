"""
API tests for POST /api/surveys/submit and GET /api/surveys/results.
"""
from __future__ import annotations

import pytest
from httpx import AsyncClient

from courseweb.identity.fingerprint import fingerprint_from_attributes

DEVICE_A = {
    "userAgent": "Mozilla/5.0 (Macintosh) Safari/605.1.15",
    "screenResolution": "1440x900",
    "timezone": "Asia/Shanghai",
    "language": "zh-CN",
}
DEVICE_B = {
    "userAgent": "Mozilla/5.0 (Windows NT 10.0) Chrome/126.0",
    "screenResolution": "1920x1080",
    "timezone": "Europe/London",
    "language": "en-GB",
}


async def _submit(client: AsyncClient, survey_id: str, device: dict, answers: dict, **headers):
    return await client.post(
        "/api/surveys/submit",
        json={"surveyId": survey_id, "deviceInfo": device, "answers": answers},
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submit_returns_id_and_timestamp(client: AsyncClient) -> None:
    response = await _submit(client, "week-1", DEVICE_A, {"q1": "yes"})
    assert response.status_code == 200, response.text
    body = response.json()
    assert set(body) == {"submissionId", "submittedAt"}
    assert body["submissionId"]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"deviceInfo": DEVICE_A, "answers": {}},
    {"surveyId": "", "deviceInfo": DEVICE_A, "answers": {}},
    {"surveyId": "week-1", "deviceInfo": DEVICE_A},
    {"surveyId": "week-1", "answers": "not-an-object"},
])
async def test_submit_missing_or_bad_fields_is_400(client: AsyncClient, payload: dict) -> None:
    response = await client.post("/api/surveys/submit", json=payload)
    assert response.status_code == 400
    assert isinstance(response.json()["error"], str)


@pytest.mark.asyncio
async def test_submit_without_device_info_is_accepted(client: AsyncClient) -> None:
    response = await client.post("/api/surveys/submit", json={"surveyId": "week-1", "answers": {"q": 1}})
    assert response.status_code == 200


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_results_missing_survey_id_is_400(client: AsyncClient, admin_headers: dict) -> None:
    response = await client.get("/api/surveys/results", headers=admin_headers)
    assert response.status_code == 400
    assert response.json() == {"error": "Missing required parameter: surveyId"}


@pytest.mark.asyncio
async def test_results_group_by_device(client: AsyncClient, admin_headers: dict) -> None:
    await _submit(client, "week-1", DEVICE_A, {"q1": "a1"}, **{"x-forwarded-for": "203.0.113.9"})
    await _submit(client, "week-1", DEVICE_B, {"q1": "b1"})
    await _submit(client, "week-1", DEVICE_A, {"q1": "a2"})
    await _submit(client, "week-2", DEVICE_B, {"q1": "other survey"})

    response = await client.get("/api/surveys/results", params={"surveyId": "week-1"}, headers=admin_headers)
    assert response.status_code == 200, response.text
    body = response.json()

    assert body["survey_id"] == "week-1"
    stats = body["statistics"]
    assert stats["total_count"] == 3
    assert stats["unique_device_count"] == 2
    assert sum(stats["by_day"].values()) == 3
    assert stats["date_range"]["earliest"] is not None

    # submissions come back newest first
    assert [s["answers"]["q1"] for s in body["submissions"]] == ["a2", "b1", "a1"]

    fp_a = fingerprint_from_attributes(
        DEVICE_A["userAgent"], DEVICE_A["screenResolution"], DEVICE_A["timezone"], DEVICE_A["language"]
    )
    groups = {g["device_info"]["device_fingerprint"]: g for g in body["device_groups"]}
    assert groups[fp_a]["device_info"]["submission_count"] == 2
    assert groups[fp_a]["device_info"]["timezone"] == "Asia/Shanghai"
    assert {s["answers"]["q1"] for s in groups[fp_a]["submissions"]} == {"a1", "a2"}


@pytest.mark.asyncio
async def test_results_store_client_ip_from_forwarded_header(client: AsyncClient, admin_headers: dict) -> None:
    await _submit(client, "week-3", DEVICE_A, {"q": 1}, **{"x-forwarded-for": "203.0.113.9, 10.0.0.2"})
    response = await client.get("/api/surveys/results", params={"surveyId": "week-3"}, headers=admin_headers)
    assert response.json()["submissions"][0]["ip_address"] == "203.0.113.9"


@pytest.mark.asyncio
async def test_results_for_unknown_survey_are_empty(client: AsyncClient, admin_headers: dict) -> None:
    response = await client.get("/api/surveys/results", params={"surveyId": "nope"}, headers=admin_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["statistics"] == {
        "total_count": 0,
        "unique_device_count": 0,
        "by_day": {},
        "date_range": {"earliest": None, "latest": None},
    }
    assert body["device_groups"] == []
    assert body["submissions"] == []
