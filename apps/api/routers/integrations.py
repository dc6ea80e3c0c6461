"""
Integrations Router

Connect, list, sync and disconnect third-party health providers.
The OAuth callback is unauthenticated: the user is bound by the signed
`state` issued from /authorize.
"""
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.database import get_db
from core.exceptions import to_api_exception
from services.credential_lifecycle import SyncInProgressError
from services.health_providers.errors import AuthExchangeError, UnsupportedProviderError
from services.health_providers.registry import get_registry
from services.health_sync import HealthSyncService, serialize_integration
from services.oauth_state import InvalidOAuthStateError
from services.repositories import DuplicateIntegrationError, IntegrationNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/integrations", tags=["integrations"])


def get_health_sync_service(db: Session = Depends(get_db)) -> HealthSyncService:
    return HealthSyncService(db)


@router.get("/providers")
def list_providers():
    """Supported providers with their display info."""
    return {"providers": get_registry().list_providers()}


@router.get("")
def list_integrations(
    user_id: UUID = Depends(get_current_user_id),
    service: HealthSyncService = Depends(get_health_sync_service),
):
    return {"integrations": service.list_integrations(user_id)}


@router.get("/{provider}/authorize")
def authorize(
    provider: str,
    user_id: UUID = Depends(get_current_user_id),
    service: HealthSyncService = Depends(get_health_sync_service),
):
    """Authorize URL and state for the provider's consent screen."""
    try:
        auth = service.get_authorization_url(user_id, provider)
    except UnsupportedProviderError as e:
        raise to_api_exception(e)
    return {"url": auth.url, "state": auth.state, "expires_at": auth.expires_at.isoformat()}


@router.get("/{provider}/callback", status_code=status.HTTP_201_CREATED)
def oauth_callback(
    provider: str,
    code: str = Query(..., description="Authorization code from the provider"),
    state: str = Query(..., description="Signed state token"),
    service: HealthSyncService = Depends(get_health_sync_service),
):
    try:
        integration = service.complete_oauth(provider, code, state)
    except (
        UnsupportedProviderError,
        InvalidOAuthStateError,
        AuthExchangeError,
        DuplicateIntegrationError,
        SyncInProgressError,
    ) as e:
        logger.warning(f"OAuth callback for {provider} rejected: {type(e).__name__}")
        raise to_api_exception(e)
    return serialize_integration(integration)


@router.post("/sync-all")
def sync_all_integrations(
    user_id: UUID = Depends(get_current_user_id),
    service: HealthSyncService = Depends(get_health_sync_service),
):
    """Sync every connected provider. Per-integration failures stay in the body."""
    outcomes = service.sync_all(user_id)
    failed = sum(1 for o in outcomes if not o.succeeded)
    return {
        "results": [o.to_dict() for o in outcomes],
        "total_synced": len(outcomes) - failed,
        "total_failed": failed,
    }


@router.post("/{integration_id}/sync")
def sync_integration(
    integration_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: HealthSyncService = Depends(get_health_sync_service),
):
    """Manual sync. Provider failures come back in the body, not as 5xx."""
    try:
        outcome = service.sync_now(integration_id, user_id=user_id)
    except (IntegrationNotFoundError, SyncInProgressError) as e:
        raise to_api_exception(e)
    return outcome.to_dict()


@router.delete("/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
def disconnect(
    integration_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: HealthSyncService = Depends(get_health_sync_service),
):
    try:
        service.disconnect(integration_id, user_id=user_id)
    except (IntegrationNotFoundError, SyncInProgressError) as e:
        raise to_api_exception(e)
    return None
