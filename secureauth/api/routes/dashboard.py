"""
Dashboard Endpoints.

Account summary and security settings: the 2FA toggle and passkey
management. All routes need a bearer session; visitors without one are
redirected to the login page.
"""
import logging
from typing import Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..models import (
    ProfileResponse,
    SettingsResponse,
    PasskeyInfo,
    TwoFactorToggleRequest,
    PasskeyOptionsRequest,
    CeremonyResult,
    ErrorResponse,
)
from ..deps import (
    get_credential_store,
    get_passkey_ceremony,
    require_dashboard_session,
    store_pending_registration,
    pop_pending_registration,
)
from ...auth.passkeys import PasskeyCeremony, decode_b64, encode_b64
from ...database.credential_store import CredentialStore
from ...database.models import AccountSession, PasskeyCredential

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


def _passkey_info(passkey: PasskeyCredential) -> PasskeyInfo:
    return PasskeyInfo(
        id=passkey.id,
        device_name=passkey.device_name,
        created_at=passkey.created_at,
        last_used_at=passkey.last_used_at,
    )


def _settings(account: AccountSession, store: CredentialStore) -> SettingsResponse:
    two_factor = store.get_two_factor(account.account_id)
    return SettingsResponse(
        email=account.email,
        two_factor_enabled=bool(two_factor and two_factor.enabled),
        passkeys=[_passkey_info(p) for p in store.list_passkeys(account.account_id)],
    )


@router.get("", response_model=ProfileResponse)
async def dashboard(
    account: AccountSession = Depends(require_dashboard_session),
    store: CredentialStore = Depends(get_credential_store),
):
    """Account summary."""
    profile = store.get_profile(account.account_id)
    two_factor = store.get_two_factor(account.account_id)

    return ProfileResponse(
        user_id=account.account_id,
        email=account.email,
        full_name=profile.full_name if profile else None,
        two_factor_enabled=bool(two_factor and two_factor.enabled),
        created_at=profile.created_at if profile else None,
    )


@router.get("/settings", response_model=SettingsResponse)
async def get_settings(
    account: AccountSession = Depends(require_dashboard_session),
    store: CredentialStore = Depends(get_credential_store),
):
    """2FA status and registered passkeys."""
    return _settings(account, store)


@router.put(
    "/settings/2fa",
    response_model=SettingsResponse,
    responses={502: {"model": ErrorResponse, "description": "2FA not set up"}},
)
async def toggle_two_factor(
    body: TwoFactorToggleRequest,
    account: AccountSession = Depends(require_dashboard_session),
    store: CredentialStore = Depends(get_credential_store),
):
    """
    Turn the sign-in code requirement on or off.

    The secret is kept when disabled, so re-enabling needs no new setup.
    """
    store.set_two_factor_enabled(account.account_id, body.enabled)
    return _settings(account, store)


# ============================================
# Passkeys
# ============================================

@router.post("/settings/passkeys/options")
async def passkey_registration_options(
    body: PasskeyOptionsRequest,
    account: AccountSession = Depends(require_dashboard_session),
    ceremony: PasskeyCeremony = Depends(get_passkey_ceremony),
) -> Dict[str, Any]:
    """
    Start registering a passkey on this device.

    Returns PublicKeyCredentialCreationOptions for
    navigator.credentials.create(). The challenge is valid for 5 minutes.
    """
    options, challenge = ceremony.registration_options(account.account_id, account.email)
    store_pending_registration(account.account_id, encode_b64(challenge), body.device_name)
    return options


@router.post(
    "/settings/passkeys",
    response_model=PasskeyInfo,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "No pending registration or ceremony cancelled"},
        401: {"model": ErrorResponse, "description": "Attestation did not verify"},
    },
)
async def register_passkey(
    body: CeremonyResult,
    account: AccountSession = Depends(require_dashboard_session),
    ceremony: PasskeyCeremony = Depends(get_passkey_ceremony),
):
    """Finish registration with the browser's credential."""
    pending = pop_pending_registration(account.account_id)
    if pending is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No pending passkey registration. Please start again.",
        )

    passkey = ceremony.register(
        account.account_id,
        pending["device_name"],
        decode_b64(pending["challenge"]),
        credential=body.credential,
        client_error=body.error,
    )
    return _passkey_info(passkey)


@router.delete(
    "/settings/passkeys/{passkey_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={502: {"model": ErrorResponse, "description": "Passkey not found"}},
)
async def delete_passkey(
    passkey_id: str,
    account: AccountSession = Depends(require_dashboard_session),
    store: CredentialStore = Depends(get_credential_store),
):
    """Remove one of your passkeys."""
    store.delete_passkey(account.account_id, passkey_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
