"""OAuth redirect boundary for provider authorization."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from cloudsync.api.connections import to_response
from cloudsync.api.deps import get_token_manager, get_user_id
from cloudsync.schemas.connection import ConnectionResponse, OAuthAuthorizeResponse
from cloudsync.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


@router.get("/callback", response_model=ConnectionResponse, status_code=201)
async def oauth_callback(
    manager: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    state: Annotated[str, Query(min_length=1)],
    code: Annotated[str | None, Query()] = None,
    error: Annotated[str | None, Query()] = None,
    display_name: Annotated[str | None, Query()] = None,
) -> ConnectionResponse:
    """Complete an authorization: validate state, exchange the code, store the connection."""
    if error:
        logger.warning("OAuth provider returned error: %s", error)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Authorization denied: {error}"
        )
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing authorization code"
        )
    connection = await manager.complete_oauth_flow(state, code, display_name)
    return to_response(connection)


@router.get("/{provider}/authorize", response_model=OAuthAuthorizeResponse)
async def oauth_authorize(
    provider: str,
    manager: Annotated[TokenLifecycleManager, Depends(get_token_manager)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> OAuthAuthorizeResponse:
    """Start an OAuth flow and return the provider's authorization URL."""
    return OAuthAuthorizeResponse(authorization_url=manager.start_oauth_flow(user_id, provider))
