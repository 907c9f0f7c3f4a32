"""Blacklink Account Routes

Endpoints:
- GET    /api/account/session               - Bootstrap the session snapshot
- PUT    /api/account/username              - Claim or rename a username
- GET    /api/account/entitlement           - Tier, features and token ledger (cached)
- POST   /api/account/entitlement/refresh   - Same, bypassing the cache
- POST   /api/account/tokens/debit          - Spend Aero tokens
- PUT    /api/account/photo                 - Override the profile photo
- GET    /api/account/shortcuts             - List QuickLaunch shortcuts
- POST   /api/account/shortcuts             - Add a shortcut
- PATCH  /api/account/shortcuts/{id}        - Edit a shortcut
- DELETE /api/account/shortcuts/{id}        - Remove a shortcut
"""

from fastapi import APIRouter, HTTPException, Depends, Header
from typing import Optional, List
from pydantic import BaseModel, Field
import logging

from auth import decode_access_token, identity_from_claims
from blacklink.models.entitlements import EntitlementSnapshot, TokenDebitResult, TokenError
from blacklink.models.profile import Identity, Tier
from blacklink.models.session import UsernameClaimResult, UsernameError
from blacklink.models.shortcuts import QuickLaunchShortcut, ShortcutCreate, ShortcutUpdate
from blacklink.services.entitlement_service import EntitlementService, entitlement_service
from blacklink.services.profile_service import ProfileService, profile_service
from blacklink.services.session_orchestrator import SessionOrchestrator
from blacklink.services.shortcut_service import ShortcutService, shortcut_service
from blacklink.services.username_registry import UsernameRegistry, username_registry
from blacklink.store.base import DocumentNotFoundError, StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/account", tags=["Blacklink Account"])

USERNAME_ERROR_STATUS = {
    UsernameError.EMPTY_HANDLE: 400,
    UsernameError.HANDLE_TAKEN: 409,
    UsernameError.REGISTRY_ERROR: 503,
}

TOKEN_ERROR_STATUS = {
    TokenError.INVALID_AMOUNT: 400,
    TokenError.NO_ALLOCATION: 403,
    TokenError.INSUFFICIENT_BALANCE: 402,
}


class UsernameRequest(BaseModel):
    username: str


class DebitRequest(BaseModel):
    amount: int


class PhotoRequest(BaseModel):
    photo_url: str = Field(..., min_length=1)


class EntitlementResponse(BaseModel):
    entitlement: EntitlementSnapshot
    subscribe_url: str
    subscribe_plus_url: str
    manage_url: str


# ============================================================================
# Dependencies
# ============================================================================

async def get_current_identity(authorization: Optional[str] = Header(None)) -> Identity:
    """Dependency to get the signed-in identity from a bearer token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization format")

    claims = decode_access_token(authorization[7:])
    identity = identity_from_claims(claims) if claims else None

    if not identity:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return identity


def get_profile_service() -> ProfileService:
    return profile_service


def get_entitlement_service() -> EntitlementService:
    return entitlement_service


def get_username_registry() -> UsernameRegistry:
    return username_registry


def get_shortcut_service() -> ShortcutService:
    return shortcut_service


def _store_unavailable(action: str, err: StoreError) -> HTTPException:
    logger.error(f"Failed to {action} ({err.cause.value}): {err}")
    return HTTPException(status_code=503, detail=f"Failed to {action}")


# ============================================================================
# Session
# ============================================================================

@router.get("/session")
async def get_session(
    identity: Identity = Depends(get_current_identity),
    profiles: ProfileService = Depends(get_profile_service),
    entitlements: EntitlementService = Depends(get_entitlement_service),
    registry: UsernameRegistry = Depends(get_username_registry),
    shortcuts: ShortcutService = Depends(get_shortcut_service),
):
    """Bootstrap every session resource in parallel.

    Always 200: a failed read shows up in ``errors`` with its default value in
    place, the other resources are still populated.
    """
    orchestrator = SessionOrchestrator(
        profiles=profiles,
        entitlements=entitlements,
        registry=registry,
        shortcuts=shortcuts,
    )
    try:
        snapshot = await orchestrator.on_identity_changed(identity)
    finally:
        # One-shot request: nothing to follow once the response is built
        orchestrator.close()
    return snapshot.to_response()


@router.put("/username", response_model=UsernameClaimResult)
async def claim_username(
    data: UsernameRequest,
    identity: Identity = Depends(get_current_identity),
    registry: UsernameRegistry = Depends(get_username_registry),
):
    result = await registry.claim_username(identity.uid, data.username)
    if not result.ok:
        raise HTTPException(
            status_code=USERNAME_ERROR_STATUS[result.error],
            detail={"error": result.error.value, "message": result.message, "handle": result.handle},
        )
    return result


@router.put("/photo")
async def set_photo(
    data: PhotoRequest,
    identity: Identity = Depends(get_current_identity),
    profiles: ProfileService = Depends(get_profile_service),
):
    try:
        await profiles.set_photo_url(identity.uid, data.photo_url, fallback_email=identity.email)
    except StoreError as e:
        raise _store_unavailable("update photo", e)
    return {"photo_url": data.photo_url}


# ============================================================================
# Entitlements & tokens
# ============================================================================

def _entitlement_response(service: EntitlementService, snapshot: EntitlementSnapshot) -> EntitlementResponse:
    return EntitlementResponse(
        entitlement=snapshot,
        subscribe_url=service.get_subscribe_url(Tier.ULTRA),
        subscribe_plus_url=service.get_subscribe_url(Tier.ULTRA_PLUS),
        manage_url=service.get_manage_url(),
    )


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    identity: Identity = Depends(get_current_identity),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    """Never fails on store errors: the FREE default is returned instead."""
    snapshot = await entitlements.get_entitlement(identity.uid, identity.email)
    return _entitlement_response(entitlements, snapshot)


@router.post("/entitlement/refresh", response_model=EntitlementResponse)
async def refresh_entitlement(
    identity: Identity = Depends(get_current_identity),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    snapshot = await entitlements.refresh(identity.uid, identity.email)
    return _entitlement_response(entitlements, snapshot)


@router.post("/tokens/debit", response_model=TokenDebitResult)
async def debit_tokens(
    data: DebitRequest,
    identity: Identity = Depends(get_current_identity),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    try:
        result = await entitlements.debit_tokens(identity.uid, data.amount)
    except StoreError as e:
        raise _store_unavailable("debit tokens", e)

    if not result.ok:
        raise HTTPException(
            status_code=TOKEN_ERROR_STATUS[result.error],
            detail={"error": result.error.value, "message": result.message, "shortfall": result.shortfall},
        )
    return result


# ============================================================================
# QuickLaunch shortcuts
# ============================================================================

@router.get("/shortcuts", response_model=List[QuickLaunchShortcut])
async def list_shortcuts(
    identity: Identity = Depends(get_current_identity),
    shortcuts: ShortcutService = Depends(get_shortcut_service),
):
    try:
        return await shortcuts.list_shortcuts(identity.uid)
    except StoreError as e:
        raise _store_unavailable("list shortcuts", e)


@router.post("/shortcuts", response_model=QuickLaunchShortcut, status_code=201)
async def add_shortcut(
    data: ShortcutCreate,
    identity: Identity = Depends(get_current_identity),
    shortcuts: ShortcutService = Depends(get_shortcut_service),
):
    try:
        return await shortcuts.add_shortcut(identity.uid, data)
    except StoreError as e:
        raise _store_unavailable("add shortcut", e)


@router.patch("/shortcuts/{shortcut_id}", response_model=QuickLaunchShortcut)
async def update_shortcut(
    shortcut_id: str,
    data: ShortcutUpdate,
    identity: Identity = Depends(get_current_identity),
    shortcuts: ShortcutService = Depends(get_shortcut_service),
):
    try:
        return await shortcuts.update_shortcut(identity.uid, shortcut_id, data)
    except DocumentNotFoundError:
        raise HTTPException(status_code=404, detail="Shortcut not found")
    except StoreError as e:
        raise _store_unavailable("update shortcut", e)


@router.delete("/shortcuts/{shortcut_id}")
async def delete_shortcut(
    shortcut_id: str,
    identity: Identity = Depends(get_current_identity),
    shortcuts: ShortcutService = Depends(get_shortcut_service),
):
    try:
        await shortcuts.delete_shortcut(identity.uid, shortcut_id)
    except DocumentNotFoundError:
        raise HTTPException(status_code=404, detail="Shortcut not found")
    except StoreError as e:
        raise _store_unavailable("delete shortcut", e)
    return {"deleted": shortcut_id}
