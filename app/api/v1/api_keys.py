import json
from typing import List

from fastapi import APIRouter, Depends, Response, status

from app.api.deps import get_current_account, get_key_store
from app.core.config import get_settings
from app.core.errors import Forbidden, NotFound, ValidationFailed
from app.core.logging import get_logger
from app.core.security import generate_api_key
from app.models.api_key import APIKey
from app.models.user import User
from app.schemas.api_key import APIKeyCreate, APIKeyListResponse, APIKeyResponse
from app.services.key_store import APIKeyStore

router = APIRouter()
logger = get_logger(__name__)


def require_api_tier(current_user: User = Depends(get_current_account)) -> User:
    """Only the API tier may hold keys."""
    if current_user.subscription_tier != get_settings().API_ACCESS_TIER:
        raise Forbidden("API keys require a Business subscription")
    return current_user


@router.post("", response_model=APIKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    key_data: APIKeyCreate,
    current_user: User = Depends(require_api_tier),
    store: APIKeyStore = Depends(get_key_store)
):
    """Issue a new API key. The raw key is returned only in this response."""
    settings = get_settings()

    if store.count_active_keys(current_user.id) >= settings.MAX_ACTIVE_API_KEYS:
        raise ValidationFailed(f"Maximum {settings.MAX_ACTIVE_API_KEYS} active API keys allowed")

    issued = generate_api_key()

    api_key = store.add(APIKey(
        name=key_data.name,
        user_id=current_user.id,
        key_hash=issued.key_hash,
        key_prefix=issued.key_prefix,
        environment=key_data.environment,
        expires_at=key_data.expires_at,
        ip_whitelist=json.dumps(key_data.ip_whitelist) if key_data.ip_whitelist else None,
        permissions=json.dumps(key_data.permissions),
    ))

    logger.info(f"API key created: {api_key.name} ({api_key.key_prefix}...) for account {current_user.id}")

    return APIKeyResponse(
        id=api_key.id,
        name=api_key.name,
        key=issued.key,  # Only returned on creation
        key_prefix=api_key.key_prefix,
        environment=api_key.environment,
        ip_whitelist=key_data.ip_whitelist,
        permissions=key_data.permissions,
        expires_at=api_key.expires_at,
        created_at=api_key.created_at
    )


@router.get("", response_model=List[APIKeyListResponse])
async def list_api_keys(
    current_user: User = Depends(require_api_tier),
    store: APIKeyStore = Depends(get_key_store)
):
    """List the caller's API keys, newest first."""
    return [
        APIKeyListResponse(
            id=key.id,
            name=key.name,
            key_prefix=key.key_prefix,
            environment=key.environment,
            permissions=key.scope_list(),
            request_count=key.request_count,
            monthly_request_count=key.monthly_request_count,
            last_used_at=key.last_used_at,
            expires_at=key.expires_at,
            revoked_at=key.revoked_at,
            created_at=key.created_at
        )
        for key in store.list_for_user(current_user.id)
    ]


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: int,
    current_user: User = Depends(get_current_account),
    store: APIKeyStore = Depends(get_key_store)
):
    """Revoke an API key. Revocation is permanent."""
    if not store.revoke(key_id, current_user.id):
        raise NotFound("API key not found")

    logger.info(f"API key {key_id} revoked by account {current_user.id}")

    return Response(status_code=status.HTTP_204_NO_CONTENT)
