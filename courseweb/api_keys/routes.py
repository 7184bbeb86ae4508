"""
routes.py — student API key lookup.

POST /api/api-key  return the key stored for (student_id, name)
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from courseweb.api_keys.schemas import ApiKeyLookupRequest, ApiKeyLookupResponse
from courseweb.database import get_db
from courseweb.errors import NotFound, ValidationError
from courseweb.store import find_api_key

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["API Keys"])


@router.post("/api-key", response_model=ApiKeyLookupResponse)
async def lookup_api_key(
    body: ApiKeyLookupRequest,
    db: AsyncSession = Depends(get_db),
) -> ApiKeyLookupResponse:
    """
    Both identifiers must match exactly after trimming surrounding whitespace.
    """
    if not body.student_id or not body.name:
        raise ValidationError("Missing required parameters: student_id and name")
    if not isinstance(body.student_id, str) or not isinstance(body.name, str):
        raise ValidationError("Invalid parameter types")

    student_id = body.student_id.strip()
    name = body.name.strip()
    if not student_id or not name:
        raise ValidationError("Parameters cannot be empty")

    row = await find_api_key(db, student_id, name)
    if row is None:
        logger.info("API key lookup miss student_id=%s", student_id)
        raise NotFound("No matching record found. Please check your student ID and name.")

    return ApiKeyLookupResponse(api_key=row.api_key, student_id=row.student_id, name=row.name)
