"""FastAPI routes for per-user provider API keys.

Secrets are write-only: responses carry non-secret metadata only.

Endpoints:
    GET    /user/keys  - Key metadata grouped by provider
    POST   /user/keys  - Store a new active key (earlier keys deactivated)
    PATCH  /user/keys  - Deactivate keys for a provider (optionally by label)
    DELETE /user/keys  - Remove keys for a provider (optionally by label)
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from chatbridge.api.middleware.auth import get_current_user_id
from chatbridge.api.schemas import KeyCreateRequest, KeyTargetRequest
from chatbridge.db.connection import get_db
from chatbridge.services.user_key_service import UserKeyService

router = APIRouter(prefix="/user/keys", tags=["keys"])


def get_key_service(db: Session = Depends(get_db)) -> UserKeyService:
    """Dependency to get UserKeyService instance."""
    return UserKeyService(db)


@router.get("")
def list_keys(
    user_id: str = Depends(get_current_user_id),
    keys: UserKeyService = Depends(get_key_service),
) -> dict:
    return {"keys": keys.list_metadata(user_id)}


@router.post("", status_code=201)
def create_key(
    body: KeyCreateRequest,
    user_id: str = Depends(get_current_user_id),
    keys: UserKeyService = Depends(get_key_service),
) -> dict:
    """Store a key; it becomes the provider's only active key."""
    keys.set_active(
        user_id,
        body.provider,
        body.key,
        label=body.label,
        scopes=body.scopes,
        expires_at=body.expires_at,
        base_url=body.base_url,
    )
    return {"ok": True, "keys": keys.list_metadata(user_id)}


@router.patch("")
def deactivate_keys(
    body: KeyTargetRequest,
    user_id: str = Depends(get_current_user_id),
    keys: UserKeyService = Depends(get_key_service),
) -> dict:
    keys.deactivate(user_id, body.provider, label=body.label)
    return {"ok": True, "keys": keys.list_metadata(user_id)}


@router.delete("")
def delete_keys(
    provider: str = Query(..., min_length=1),
    label: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    keys: UserKeyService = Depends(get_key_service),
) -> dict:
    keys.delete(user_id, provider, label=label)
    return {"ok": True, "keys": keys.list_metadata(user_id)}
