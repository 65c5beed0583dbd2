"""
Verification flow controller.

Sequences a sign-in through its steps:

    awaiting_password
        -> awaiting_method_choice          (2FA enabled)
            -> awaiting_totp_code          -> authenticated
            -> awaiting_passkey_assertion  -> authenticated
        -> generating_secret               (2FA never set up)
            -> awaiting_confirmation_code -> enabled -> authenticated
        -> authenticated                   (2FA disabled in settings)

There is no failed state: a rejected step raises an AuthFlowError and the
session stays where it was (a failed passkey assertion falls back to
method choice) so the user can retry. After MAX_CODE_ATTEMPTS wrong codes
the flow expires and the user starts again from the password. Only
`complete()` turns a session into an AccountSession, and only from
`authenticated`.
"""
import base64
import logging
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import (
    AccountLocked,
    AuthFlowError,
    FlowExpired,
    InvalidCode,
    InvalidCredentials,
    InvalidFlowState,
    NoPasskeys,
)
from .mfa import (
    DEFAULT_ISSUER,
    find_matching_backup_code,
    generate_backup_codes,
    generate_qr_code_base64,
    generate_totp_secret,
    get_totp_provisioning_uri,
    hash_backup_codes,
    verify_totp,
)
from .passkeys import PasskeyCeremony
from ..database.auth_db import AuthDB, verify_password
from ..database.credential_store import CredentialStore
from ..database.models import AccountSession

logger = logging.getLogger(__name__)

# Account lockout settings
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_MINUTES = 15

# Wrong second-factor codes allowed before the flow is thrown away
MAX_CODE_ATTEMPTS = 5

METHOD_CODE = "code"
METHOD_PASSKEY = "passkey"


class FlowState(str, Enum):
    AWAITING_PASSWORD = "awaiting_password"
    AWAITING_METHOD_CHOICE = "awaiting_method_choice"
    AWAITING_TOTP_CODE = "awaiting_totp_code"
    AWAITING_PASSKEY_ASSERTION = "awaiting_passkey_assertion"
    GENERATING_SECRET = "generating_secret"
    AWAITING_CONFIRMATION_CODE = "awaiting_confirmation_code"
    ENABLED = "enabled"
    AUTHENTICATED = "authenticated"


@dataclass
class VerificationSession:
    """
    Transient state carried between the steps of one sign-in.

    Serialized between requests; holds nothing once the flow completes.
    `pending_secret` only exists during setup and `challenge` (base64)
    only while a passkey assertion is outstanding. `failed_codes` counts
    rejected TOTP, backup and confirmation codes across the whole flow.
    """
    flow_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: FlowState = FlowState.AWAITING_PASSWORD
    account_id: Optional[str] = None
    email: Optional[str] = None
    pending_secret: Optional[str] = None
    challenge: Optional[str] = None
    methods: List[str] = field(default_factory=list)
    failed_codes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationSession":
        data = dict(data)
        data["state"] = FlowState(data["state"])
        return cls(**data)

    @property
    def is_authenticated(self) -> bool:
        return self.state == FlowState.AUTHENTICATED


@dataclass
class SetupDetails:
    """What the user needs to enroll an authenticator app."""
    secret: str
    provisioning_uri: str
    qr_code_base64: str


class VerificationFlow:
    """
    Drives VerificationSession objects through the sign-in state machine.

    Example usage:
        flow = VerificationFlow(auth_db, CredentialStore(auth_db), ceremony)
        session = flow.start()
        flow.submit_password(session, "user@example.com", "password")
        if session.state == FlowState.AWAITING_METHOD_CHOICE:
            flow.choose_method(session, "code")
            flow.submit_code(session, "123456")
        account_session = flow.complete(session)
    """

    def __init__(
        self,
        db: AuthDB,
        store: CredentialStore,
        passkeys: PasskeyCeremony,
        issuer: str = DEFAULT_ISSUER,
        session_hours: int = 24,
    ):
        self.db = db
        self.store = store
        self.passkeys = passkeys
        self.issuer = issuer
        self.session_hours = session_hours

    @staticmethod
    def _require(session: VerificationSession, *states: FlowState) -> None:
        if session.state not in states:
            raise InvalidFlowState(
                f"Expected {' or '.join(s.value for s in states)}, "
                f"flow is {session.state.value}"
            )

    def _transition(self, session: VerificationSession, state: FlowState) -> None:
        logger.info(
            f"Flow {session.flow_id[:8]} for user {session.account_id}: "
            f"{session.state.value} -> {state.value}"
        )
        session.state = state

    def _reject_code(self, session: VerificationSession, message: Optional[str] = None) -> None:
        """
        Count a wrong code and raise.

        Raises:
            InvalidCode: The user may try again.
            FlowExpired: MAX_CODE_ATTEMPTS reached; the user must log in again.
        """
        session.failed_codes += 1
        if session.failed_codes >= MAX_CODE_ATTEMPTS:
            logger.warning(
                f"Flow {session.flow_id[:8]} for user {session.account_id}: "
                f"{session.failed_codes} wrong codes, discarding"
            )
            raise FlowExpired("Too many wrong codes. Please log in again.")
        raise InvalidCode(message)

    def start(self) -> VerificationSession:
        return VerificationSession()

    def start_after_signup(self, account_id: str, email: str) -> VerificationSession:
        """New accounts go straight to 2FA setup."""
        return VerificationSession(
            state=FlowState.GENERATING_SECRET,
            account_id=account_id,
            email=email,
        )

    # ==========================================
    # Password step
    # ==========================================

    def submit_password(self, session: VerificationSession, email: str, password: str) -> FlowState:
        """
        Check email and password, then route by the account's 2FA status.

        Raises:
            AccountLocked: Too many recent failures for this email.
            InvalidCredentials: Unknown email, wrong password or disabled account.
        """
        self._require(session, FlowState.AWAITING_PASSWORD)

        failed_count = self.db.get_failed_login_count(email, LOCKOUT_MINUTES)
        if failed_count >= MAX_FAILED_ATTEMPTS:
            raise AccountLocked(
                f"Account locked due to too many failed attempts. "
                f"Try again in {LOCKOUT_MINUTES} minutes.",
                retry_after=LOCKOUT_MINUTES * 60,
            )

        user = self.db.get_user_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            self.db.record_failed_login(email)
            raise InvalidCredentials()

        if not user.is_active:
            raise InvalidCredentials("Account is disabled")

        self.db.clear_failed_logins(email)
        session.account_id = user.user_id
        session.email = user.email

        two_factor = self.store.get_two_factor(session.account_id)
        if two_factor is None:
            self._transition(session, FlowState.GENERATING_SECRET)
        elif two_factor.enabled:
            self._transition(session, FlowState.AWAITING_METHOD_CHOICE)
            session.methods = self.available_methods(session)
        else:
            self._transition(session, FlowState.AUTHENTICATED)
        return session.state

    # ==========================================
    # Method choice
    # ==========================================

    def available_methods(self, session: VerificationSession) -> List[str]:
        """Passkey is offered only when the account has at least one."""
        self._require(session, FlowState.AWAITING_METHOD_CHOICE)
        if self.store.has_passkeys(session.account_id):
            return [METHOD_CODE, METHOD_PASSKEY]
        return [METHOD_CODE]

    def choose_method(self, session: VerificationSession, method: str) -> Optional[Dict[str, Any]]:
        """
        Select the second factor.

        Returns:
            WebAuthn request options when the passkey method is chosen.

        Raises:
            NoPasskeys: Passkey chosen but the account has none.
        """
        self._require(session, FlowState.AWAITING_METHOD_CHOICE)

        if method == METHOD_CODE:
            self._transition(session, FlowState.AWAITING_TOTP_CODE)
            return None

        if method == METHOD_PASSKEY:
            session.methods = self.available_methods(session)
            if METHOD_PASSKEY not in session.methods:
                raise NoPasskeys()
            options, challenge = self.passkeys.authentication_options(session.account_id)
            session.challenge = base64.b64encode(challenge).decode("ascii")
            self._transition(session, FlowState.AWAITING_PASSKEY_ASSERTION)
            return options

        raise InvalidFlowState(f"Unknown verification method: {method}")

    # ==========================================
    # Challenges
    # ==========================================

    def submit_code(self, session: VerificationSession, code: str) -> FlowState:
        """
        Validate a TOTP code.

        Raises:
            InvalidCode: The code does not match the current +-1 period.
            FlowExpired: Too many wrong codes in this flow.
        """
        self._require(session, FlowState.AWAITING_TOTP_CODE)

        two_factor = self.store.get_two_factor(session.account_id)
        if two_factor is None or not verify_totp(two_factor.secret, code):
            logger.info(f"Invalid 2FA code for user {session.account_id}")
            self._reject_code(session)

        self._transition(session, FlowState.AUTHENTICATED)
        return session.state

    def submit_backup_code(self, session: VerificationSession, code: str) -> FlowState:
        """
        Accept a one-time backup code in place of a TOTP code.

        The matching code is removed so it cannot be used again.
        """
        self._require(session, FlowState.AWAITING_TOTP_CODE)

        hashed_codes = self.store.get_backup_codes(session.account_id)
        code_index = find_matching_backup_code(code, hashed_codes)
        if code_index is None or not self.store.consume_backup_code(
            session.account_id, hashed_codes[code_index]
        ):
            self._reject_code(session, "Invalid backup code")

        logger.info(f"Backup code used for login: user {session.account_id}")
        self._transition(session, FlowState.AUTHENTICATED)
        return session.state

    def submit_assertion(
        self,
        session: VerificationSession,
        credential: Optional[Dict[str, Any]] = None,
        client_error: Optional[str] = None,
    ) -> FlowState:
        """
        Verify a passkey assertion.

        On any ceremony failure the flow falls back to method choice and the
        specific error is re-raised.
        """
        self._require(session, FlowState.AWAITING_PASSKEY_ASSERTION)

        challenge = base64.b64decode(session.challenge or "")
        session.challenge = None
        try:
            self.passkeys.authenticate(
                session.account_id,
                challenge,
                credential=credential,
                client_error=client_error,
            )
        except AuthFlowError:
            self._transition(session, FlowState.AWAITING_METHOD_CHOICE)
            raise

        self._transition(session, FlowState.AUTHENTICATED)
        return session.state

    # ==========================================
    # First-time setup
    # ==========================================

    def begin_setup(self, session: VerificationSession) -> SetupDetails:
        """
        Generate a TOTP secret and its QR code.

        Calling it again while awaiting confirmation re-displays the same
        secret rather than generating a new one.
        """
        self._require(session, FlowState.GENERATING_SECRET, FlowState.AWAITING_CONFIRMATION_CODE)

        if session.pending_secret is None:
            session.pending_secret = generate_totp_secret()
        uri = get_totp_provisioning_uri(session.pending_secret, session.email, self.issuer)

        if session.state == FlowState.GENERATING_SECRET:
            self._transition(session, FlowState.AWAITING_CONFIRMATION_CODE)
        return SetupDetails(
            secret=session.pending_secret,
            provisioning_uri=uri,
            qr_code_base64=generate_qr_code_base64(uri),
        )

    def confirm_setup(self, session: VerificationSession, code: str) -> List[str]:
        """
        Confirm the authenticator app and persist the secret.

        Returns:
            Plain backup codes; only their hashes are stored.

        Raises:
            InvalidCode: The code does not match the pending secret.
            StoreError: The secret could not be saved.
        """
        self._require(session, FlowState.AWAITING_CONFIRMATION_CODE)

        if not verify_totp(session.pending_secret, code):
            self._reject_code(session)

        backup_codes = generate_backup_codes()
        self.store.create_two_factor(
            session.account_id,
            session.pending_secret,
            hash_backup_codes(backup_codes),
        )
        session.pending_secret = None
        self._transition(session, FlowState.ENABLED)
        self._transition(session, FlowState.AUTHENTICATED)
        return backup_codes

    # ==========================================
    # Completion
    # ==========================================

    def complete(self, session: VerificationSession) -> AccountSession:
        """
        Issue the account session for a finished flow.

        Raises:
            InvalidFlowState: The flow has not reached authenticated.
        """
        self._require(session, FlowState.AUTHENTICATED)

        token = self.db.create_session(session.account_id, expires_hours=self.session_hours)
        self.db.update_last_login(session.account_id)
        logger.info(f"User logged in: {session.email}")
        return AccountSession(
            account_id=session.account_id,
            email=session.email,
            token=token,
        )

