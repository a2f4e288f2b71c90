"""
API key management (admin only).

    GET  /api/keys   - list keys (previews only)
    POST /api/keys   - create a key; the plaintext is returned once
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth import api_keys
from auth.dependencies import require_admin
from database import get_db
from models import User
from schemas import ApiKeyCreate, ApiKeyCreated, ApiKeyResponse
from utils.audit import audit

router = APIRouter(prefix="/api/keys", tags=["api-keys"])


@router.get("", response_model=list[ApiKeyResponse])
async def list_api_keys(
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return [ApiKeyResponse.model_validate(k) for k in await api_keys.list_api_keys(db)]


@router.post("", response_model=ApiKeyCreated, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    body: ApiKeyCreate,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    created = await api_keys.create_api_key(db, body.name, created_by=user.id)
    response = ApiKeyCreated(
        **ApiKeyResponse.model_validate(created.api_key).model_dump(),
        key=created.plaintext,
    )
    await audit.log_api_key_created(
        db, response.id, response.name, response.key_preview
    )
    return response
