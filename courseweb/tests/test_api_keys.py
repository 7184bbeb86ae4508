"""
API tests for POST /api/api-key plus the CSV import helpers.
"""
from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import AsyncClient

from courseweb import store
from courseweb.api_keys.import_keys import read_rows


@pytest_asyncio.fixture
async def seeded(session_factory):
    async with session_factory() as db:
        await store.upsert_api_key(db, "2024001", "Li Lei", "sk-li-lei")
        await db.commit()


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_lookup_returns_key(client: AsyncClient, seeded) -> None:
    response = await client.post("/api/api-key", json={"student_id": "2024001", "name": "Li Lei"})
    assert response.status_code == 200, response.text
    assert response.json() == {"api_key": "sk-li-lei", "student_id": "2024001", "name": "Li Lei"}


@pytest.mark.asyncio
async def test_lookup_trims_whitespace(client: AsyncClient, seeded) -> None:
    response = await client.post("/api/api-key", json={"student_id": " 2024001 ", "name": "Li Lei\t"})
    assert response.status_code == 200
    assert response.json()["api_key"] == "sk-li-lei"


@pytest.mark.asyncio
async def test_lookup_requires_both_fields_to_match(client: AsyncClient, seeded) -> None:
    response = await client.post("/api/api-key", json={"student_id": "2024001", "name": "Han Meimei"})
    assert response.status_code == 404
    assert "No matching record" in response.json()["error"]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload,message", [
    ({}, "Missing required parameters: student_id and name"),
    ({"student_id": "2024001"}, "Missing required parameters: student_id and name"),
    ({"student_id": 2024001, "name": "Li Lei"}, "Invalid parameter types"),
    ({"student_id": "2024001", "name": ["Li Lei"]}, "Invalid parameter types"),
    ({"student_id": "   ", "name": "Li Lei"}, "Parameters cannot be empty"),
])
async def test_lookup_malformed_input_is_400(client: AsyncClient, payload: dict, message: str) -> None:
    response = await client.post("/api/api-key", json=payload)
    assert response.status_code == 400
    assert response.json() == {"error": message}


@pytest.mark.asyncio
async def test_lookup_get_is_not_allowed(client: AsyncClient) -> None:
    response = await client.get("/api/api-key")
    assert response.status_code == 405
    assert "error" in response.json()


# ---------------------------------------------------------------------------
# CSV import
# ---------------------------------------------------------------------------

def test_read_rows_trims_and_skips_blank_rows(tmp_path) -> None:
    path = tmp_path / "keys.csv"
    path.write_text(
        "student_id,name,api_key\n"
        " 2024001 ,Li Lei,sk-1\n"
        "2024002,,sk-2\n"
        "2024003,Han Meimei, sk-3 \n",
        encoding="utf-8",
    )
    assert read_rows(path) == [
        ("2024001", "Li Lei", "sk-1"),
        ("2024003", "Han Meimei", "sk-3"),
    ]


def test_read_rows_requires_header_columns(tmp_path) -> None:
    path = tmp_path / "keys.csv"
    path.write_text("id,name\n1,x\n", encoding="utf-8")
    with pytest.raises(ValueError, match="student_id"):
        read_rows(path)
