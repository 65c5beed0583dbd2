"""
Authentication Endpoints.

Provides signup, the step-by-step sign-in flow (password, 2FA setup,
method choice, TOTP or passkey verification) and logout.

Every flow step reads the flow token from the X-Flow-Token header and
returns the flow's new state. Once the flow is authenticated the response
carries the bearer session and the flow token stops working.
"""
import logging
from typing import List, Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..models import (
    UserSignup,
    UserLogin,
    TokenResponse,
    FlowResponse,
    MethodChoiceRequest,
    CodeVerifyRequest,
    SetupResponse,
    SetupConfirmRequest,
    CeremonyResult,
    ErrorResponse,
)
from ..deps import (
    get_db,
    get_flow,
    get_flow_session,
    get_current_session,
    save_flow,
    discard_flow,
    flow_step,
    check_signup_rate_limit,
    check_login_rate_limit,
    check_verify_rate_limit,
)
from ...auth.errors import InvalidCode
from ...auth.flow import VerificationFlow, VerificationSession
from ...database.auth_db import AuthDB, hash_password
from ...database.models import AccountSession

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])

FLOW_ERRORS = {
    401: {"model": ErrorResponse, "description": "Flow expired"},
    409: {"model": ErrorResponse, "description": "Step not available in the current state"},
}
VERIFY_ERRORS = {
    **FLOW_ERRORS,
    400: {"model": ErrorResponse, "description": "Wrong code or ceremony failed"},
    429: {"model": ErrorResponse, "description": "Too many verification attempts from this IP"},
}


def _flow_response(
    flow: VerificationFlow,
    session: VerificationSession,
    options: Optional[Dict[str, Any]] = None,
    backup_codes: Optional[List[str]] = None,
) -> FlowResponse:
    """
    Describe the flow after a step.

    An authenticated flow is completed here: the account session is issued
    and the flow is discarded.
    """
    response = FlowResponse(
        flow_token=session.flow_id,
        state=session.state.value,
        methods=session.methods,
        options=options,
    )

    if session.is_authenticated:
        account = flow.complete(session)
        discard_flow(session.flow_id)
        response.session = TokenResponse(
            access_token=account.token,
            token_type="bearer",
            expires_in=flow.session_hours * 3600,
            user_id=account.account_id,
            email=account.email,
            backup_codes=backup_codes,
        )

    return response


@router.post(
    "/signup",
    response_model=FlowResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"model": ErrorResponse, "description": "Email already exists"},
        429: {"model": ErrorResponse, "description": "Too many signup attempts"},
    },
    dependencies=[Depends(check_signup_rate_limit)],
)
async def signup(
    user_data: UserSignup,
    db: AuthDB = Depends(get_db),
    flow: VerificationFlow = Depends(get_flow),
):
    """
    Create an account and its profile.

    The returned flow continues with 2FA setup (GET /auth/setup-2fa).
    """
    password_hash = hash_password(user_data.password)

    try:
        user_id = db.create_user(
            email=user_data.email,
            password_hash=password_hash,
            full_name=user_data.full_name,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )

    session = flow.start_after_signup(user_id, user_data.email.lower().strip())
    save_flow(session)

    logger.info(f"New user registered: {user_data.email}")
    return _flow_response(flow, session)


@router.post(
    "/login",
    response_model=FlowResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credentials"},
        429: {"model": ErrorResponse, "description": "Account locked or too many attempts from this IP"},
    },
    dependencies=[Depends(check_login_rate_limit)],
)
async def login(
    credentials: UserLogin,
    flow: VerificationFlow = Depends(get_flow),
):
    """
    Password step. Starts a new sign-in flow.

    The next state tells the client where to go:
    - awaiting_method_choice: 2FA is enabled, pick code or passkey
    - generating_secret: 2FA was never set up, go to setup
    - authenticated: 2FA is disabled, `session` holds the bearer token

    Account is locked for 15 minutes after 5 failed login attempts.
    """
    session = flow.start()
    flow.submit_password(session, credentials.email, credentials.password)

    if not session.is_authenticated:
        save_flow(session)
    return _flow_response(flow, session)


# ============================================
# First-time 2FA setup
# ============================================

@router.get("/setup-2fa", response_model=SetupResponse, responses=FLOW_ERRORS)
async def begin_setup(
    session: VerificationSession = Depends(get_flow_session),
    flow: VerificationFlow = Depends(get_flow),
):
    """
    Generate the TOTP secret and QR code to scan.

    Reloading returns the same secret until it is confirmed.
    """
    with flow_step(session):
        details = flow.begin_setup(session)

    return SetupResponse(
        flow_token=session.flow_id,
        state=session.state.value,
        secret=details.secret,
        qr_code_base64=details.qr_code_base64,
        provisioning_uri=details.provisioning_uri,
    )


@router.post(
    "/setup-2fa",
    response_model=FlowResponse,
    responses=VERIFY_ERRORS,
    dependencies=[Depends(check_verify_rate_limit)],
)
async def confirm_setup(
    body: SetupConfirmRequest,
    session: VerificationSession = Depends(get_flow_session),
    flow: VerificationFlow = Depends(get_flow),
):
    """
    Confirm the authenticator app with a code and enable 2FA.

    The backup codes in the response are shown once. Store them securely!
    """
    with flow_step(session):
        backup_codes = flow.confirm_setup(session, body.totp_code)

    return _flow_response(flow, session, backup_codes=backup_codes)


# ============================================
# Second factor
# ============================================

@router.get("/choose-2fa", response_model=FlowResponse, responses=FLOW_ERRORS)
async def list_methods(
    session: VerificationSession = Depends(get_flow_session),
    flow: VerificationFlow = Depends(get_flow),
):
    """Available verification methods: always code, passkey if registered."""
    with flow_step(session):
        session.methods = flow.available_methods(session)

    return _flow_response(flow, session)


@router.post("/choose-2fa", response_model=FlowResponse, responses=FLOW_ERRORS)
async def choose_method(
    body: MethodChoiceRequest,
    session: VerificationSession = Depends(get_flow_session),
    flow: VerificationFlow = Depends(get_flow),
):
    """
    Pick the verification method.

    For passkey, `options` holds the PublicKeyCredentialRequestOptions to
    pass to navigator.credentials.get().
    """
    with flow_step(session):
        options = flow.choose_method(session, body.method)

    return _flow_response(flow, session, options=options)


@router.post(
    "/verify-2fa",
    response_model=FlowResponse,
    responses=VERIFY_ERRORS,
    dependencies=[Depends(check_verify_rate_limit)],
)
async def verify_code(
    body: CodeVerifyRequest,
    session: VerificationSession = Depends(get_flow_session),
    flow: VerificationFlow = Depends(get_flow),
):
    """
    Verify a TOTP code or a one-time backup code.

    Backup codes are consumed on use and cannot be reused. After 5 wrong
    codes the flow expires (401) and the user must log in again.
    """
    with flow_step(session):
        if body.backup_code:
            flow.submit_backup_code(session, body.backup_code)
        elif body.totp_code:
            flow.submit_code(session, body.totp_code)
        else:
            raise InvalidCode("Enter the code from your authenticator app")

    return _flow_response(flow, session)


@router.post(
    "/verify-passkey",
    response_model=FlowResponse,
    responses=VERIFY_ERRORS,
    dependencies=[Depends(check_verify_rate_limit)],
)
async def verify_passkey(
    body: CeremonyResult,
    session: VerificationSession = Depends(get_flow_session),
    flow: VerificationFlow = Depends(get_flow),
):
    """
    Verify the passkey assertion from navigator.credentials.get().

    On failure the flow returns to method choice so the user can switch
    to a code.
    """
    with flow_step(session):
        flow.submit_assertion(session, credential=body.credential, client_error=body.error)

    return _flow_response(flow, session)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    account: AccountSession = Depends(get_current_session),
    db: AuthDB = Depends(get_db),
):
    """Revoke the current session."""
    db.revoke_session(account.token)
    logger.info(f"User logged out: {account.email}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout/all", status_code=status.HTTP_204_NO_CONTENT)
async def logout_all(
    account: AccountSession = Depends(get_current_session),
    db: AuthDB = Depends(get_db),
):
    """Revoke every session of the account (logout from all devices)."""
    count = db.revoke_all_sessions(account.account_id)
    logger.info(f"User logged out from {count} sessions: {account.email}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
