"""
Tests for the verification flow state machine.

Covers:
- Password step routing by 2FA status
- Account lockout
- Method choice with and without passkeys
- TOTP, backup code and passkey verification
- First-time setup
- Completion only from authenticated
"""
import uuid
from types import SimpleNamespace

import pyotp
import pytest
from unittest.mock import patch

from secureauth.auth.errors import (
    AccountLocked,
    Cancelled,
    FlowExpired,
    InvalidAssertion,
    InvalidCode,
    InvalidCredentials,
    InvalidFlowState,
    NoPasskeys,
)
from secureauth.auth.flow import (
    MAX_CODE_ATTEMPTS,
    MAX_FAILED_ATTEMPTS,
    FlowState,
    VerificationSession,
)
from secureauth.auth.mfa import generate_totp_secret, hash_backup_codes
from secureauth.auth.passkeys import encode_b64
from secureauth.database.models import PasskeyCredential


BACKUP_CODES = ["AAAA-1111", "BBBB-2222"]


@pytest.fixture
def totp_secret(store, sample_user):
    """Enable 2FA for the sample user."""
    secret = generate_totp_secret()
    store.create_two_factor(sample_user["user_id"], secret, hash_backup_codes(BACKUP_CODES))
    return secret


@pytest.fixture
def with_passkey(store, sample_user):
    return store.create_passkey(PasskeyCredential(
        id=str(uuid.uuid4()),
        user_id=sample_user["user_id"],
        credential_id=encode_b64(b"cred-1"),
        public_key=encode_b64(b"cose-public-key"),
        device_name="My iPhone",
    ))


def _login(flow, sample_user) -> VerificationSession:
    session = flow.start()
    flow.submit_password(session, sample_user["email"], sample_user["password"])
    return session


# ============================================
# Password step
# ============================================

class TestPasswordStep:

    def test_enabled_2fa_goes_to_method_choice(self, flow, sample_user, totp_secret):
        session = _login(flow, sample_user)

        assert session.state == FlowState.AWAITING_METHOD_CHOICE
        assert session.account_id == sample_user["user_id"]
        assert session.methods == ["code"]

    def test_no_2fa_goes_to_setup(self, flow, sample_user):
        session = _login(flow, sample_user)

        assert session.state == FlowState.GENERATING_SECRET

    def test_disabled_2fa_authenticates(self, flow, store, sample_user, totp_secret):
        store.set_two_factor_enabled(sample_user["user_id"], False)

        session = _login(flow, sample_user)

        assert session.state == FlowState.AUTHENTICATED

    def test_wrong_password(self, flow, auth_db, sample_user):
        session = flow.start()

        with pytest.raises(InvalidCredentials):
            flow.submit_password(session, sample_user["email"], "wrong_password")

        assert session.state == FlowState.AWAITING_PASSWORD
        assert auth_db.get_failed_login_count(sample_user["email"]) == 1

    def test_unknown_email(self, flow):
        with pytest.raises(InvalidCredentials):
            flow.submit_password(flow.start(), "nobody@example.com", "any_password")

    def test_lockout_after_max_attempts(self, flow, auth_db, sample_user):
        for _ in range(MAX_FAILED_ATTEMPTS):
            auth_db.record_failed_login(sample_user["email"])

        with pytest.raises(AccountLocked) as exc_info:
            flow.submit_password(flow.start(), sample_user["email"], sample_user["password"])

        assert exc_info.value.retry_after == 900

    def test_success_clears_failed_attempts(self, flow, auth_db, sample_user):
        auth_db.record_failed_login(sample_user["email"])

        _login(flow, sample_user)

        assert auth_db.get_failed_login_count(sample_user["email"]) == 0


# ============================================
# Method choice
# ============================================

class TestMethodChoice:

    def test_methods_with_passkey(self, flow, sample_user, totp_secret, with_passkey):
        session = _login(flow, sample_user)

        assert flow.available_methods(session) == ["code", "passkey"]

    def test_choose_code(self, flow, sample_user, totp_secret):
        session = _login(flow, sample_user)

        assert flow.choose_method(session, "code") is None
        assert session.state == FlowState.AWAITING_TOTP_CODE

    def test_choose_passkey_without_passkeys(self, flow, sample_user, totp_secret):
        session = _login(flow, sample_user)

        with pytest.raises(NoPasskeys):
            flow.choose_method(session, "passkey")

        assert session.state == FlowState.AWAITING_METHOD_CHOICE

    def test_choose_passkey(self, flow, sample_user, totp_secret, with_passkey):
        session = _login(flow, sample_user)

        options = flow.choose_method(session, "passkey")

        assert session.state == FlowState.AWAITING_PASSKEY_ASSERTION
        assert session.challenge is not None
        assert options["allowCredentials"][0]["id"] == "Y3JlZC0x"


# ============================================
# Second factor
# ============================================

class TestCodeVerification:

    def test_valid_code_authenticates(self, flow, sample_user, totp_secret):
        session = _login(flow, sample_user)
        flow.choose_method(session, "code")

        flow.submit_code(session, pyotp.TOTP(totp_secret).now())

        assert session.state == FlowState.AUTHENTICATED

    def test_invalid_code_keeps_state(self, flow, sample_user, totp_secret, code_outside_window):
        session = _login(flow, sample_user)
        flow.choose_method(session, "code")

        with pytest.raises(InvalidCode):
            flow.submit_code(session, code_outside_window(totp_secret))

        assert session.state == FlowState.AWAITING_TOTP_CODE
        assert session.failed_codes == 1

    def test_too_many_wrong_codes_expire_flow(self, flow, sample_user, totp_secret, code_outside_window):
        session = _login(flow, sample_user)
        flow.choose_method(session, "code")
        wrong = code_outside_window(totp_secret)

        for _ in range(MAX_CODE_ATTEMPTS - 1):
            with pytest.raises(InvalidCode):
                flow.submit_code(session, wrong)

        with pytest.raises(FlowExpired):
            flow.submit_code(session, wrong)

    def test_wrong_backup_codes_count_towards_limit(self, flow, sample_user, totp_secret, code_outside_window):
        session = _login(flow, sample_user)
        flow.choose_method(session, "code")

        for _ in range(MAX_CODE_ATTEMPTS - 1):
            with pytest.raises(InvalidCode):
                flow.submit_code(session, code_outside_window(totp_secret))

        with pytest.raises(FlowExpired):
            flow.submit_backup_code(session, "ZZZZ-9999")

    def test_malformed_code(self, flow, sample_user, totp_secret):
        session = _login(flow, sample_user)
        flow.choose_method(session, "code")

        with pytest.raises(InvalidCode):
            flow.submit_code(session, "abc")

    def test_backup_code_is_single_use(self, flow, store, sample_user, totp_secret):
        session = _login(flow, sample_user)
        flow.choose_method(session, "code")
        flow.submit_backup_code(session, BACKUP_CODES[0])

        assert session.state == FlowState.AUTHENTICATED
        assert len(store.get_backup_codes(sample_user["user_id"])) == 1

        session = _login(flow, sample_user)
        flow.choose_method(session, "code")
        with pytest.raises(InvalidCode):
            flow.submit_backup_code(session, BACKUP_CODES[0])

    def test_racing_backup_code_consumed_once(self, flow, store, sample_user, totp_secret):
        snapshot = store.get_backup_codes(sample_user["user_id"])
        first = _login(flow, sample_user)
        flow.choose_method(first, "code")
        second = _login(flow, sample_user)
        flow.choose_method(second, "code")

        flow.submit_backup_code(first, BACKUP_CODES[0])
        # The second request matched against codes read before the first one committed
        with patch.object(store, "get_backup_codes", return_value=snapshot):
            with pytest.raises(InvalidCode):
                flow.submit_backup_code(second, BACKUP_CODES[0])

        assert second.state == FlowState.AWAITING_TOTP_CODE
        assert len(store.get_backup_codes(sample_user["user_id"])) == 1
        flow.submit_backup_code(second, BACKUP_CODES[1])
        assert second.state == FlowState.AUTHENTICATED

    def test_code_before_choice(self, flow, sample_user, totp_secret):
        session = _login(flow, sample_user)

        with pytest.raises(InvalidFlowState):
            flow.submit_code(session, pyotp.TOTP(totp_secret).now())


class TestPasskeyVerification:

    def _awaiting_assertion(self, flow, sample_user):
        session = _login(flow, sample_user)
        flow.choose_method(session, "passkey")
        return session

    def test_valid_assertion_authenticates(self, flow, sample_user, totp_secret, with_passkey):
        session = self._awaiting_assertion(flow, sample_user)

        with patch(
            "secureauth.auth.passkeys.verify_authentication_response",
            return_value=SimpleNamespace(new_sign_count=1),
        ):
            flow.submit_assertion(session, credential={"id": "Y3JlZC0x", "rawId": "Y3JlZC0x"})

        assert session.state == FlowState.AUTHENTICATED
        assert session.challenge is None

    def test_cancelled_falls_back_to_method_choice(self, flow, sample_user, totp_secret, with_passkey):
        session = self._awaiting_assertion(flow, sample_user)

        with pytest.raises(Cancelled):
            flow.submit_assertion(session, client_error="NotAllowedError")

        assert session.state == FlowState.AWAITING_METHOD_CHOICE

    def test_unknown_credential_falls_back(self, flow, sample_user, totp_secret, with_passkey):
        session = self._awaiting_assertion(flow, sample_user)

        with pytest.raises(InvalidAssertion):
            flow.submit_assertion(session, credential={"id": "b3RoZXI", "rawId": "b3RoZXI"})

        assert session.state == FlowState.AWAITING_METHOD_CHOICE


# ============================================
# First-time setup
# ============================================

class TestSetup:

    def test_begin_setup(self, flow, sample_user):
        session = _login(flow, sample_user)

        details = flow.begin_setup(session)

        assert session.state == FlowState.AWAITING_CONFIRMATION_CODE
        assert details.secret == session.pending_secret
        assert details.provisioning_uri.startswith("otpauth://totp/")
        assert "issuer=SecureAuth" in details.provisioning_uri
        assert details.qr_code_base64.startswith("data:image/png;base64,")

    def test_begin_setup_again_keeps_secret(self, flow, sample_user):
        session = _login(flow, sample_user)

        first = flow.begin_setup(session)
        second = flow.begin_setup(session)

        assert first.secret == second.secret

    def test_confirm_setup(self, flow, store, sample_user):
        session = _login(flow, sample_user)
        details = flow.begin_setup(session)

        backup_codes = flow.confirm_setup(session, pyotp.TOTP(details.secret).now())

        assert session.state == FlowState.AUTHENTICATED
        assert session.pending_secret is None
        assert len(backup_codes) == 8

        two_factor = store.get_two_factor(sample_user["user_id"])
        assert two_factor.secret == details.secret
        assert two_factor.enabled is True
        assert len(two_factor.backup_codes) == 8
        assert backup_codes[0] not in two_factor.backup_codes

    def test_confirm_wrong_code_keeps_state(self, flow, store, sample_user, code_outside_window):
        session = _login(flow, sample_user)
        details = flow.begin_setup(session)

        with pytest.raises(InvalidCode):
            flow.confirm_setup(session, code_outside_window(details.secret))

        assert session.state == FlowState.AWAITING_CONFIRMATION_CODE
        assert session.pending_secret is not None
        assert store.get_two_factor(sample_user["user_id"]) is None

    def test_signup_starts_in_setup(self, flow, sample_user):
        session = flow.start_after_signup(sample_user["user_id"], sample_user["email"])

        assert session.state == FlowState.GENERATING_SECRET


# ============================================
# Completion
# ============================================

class TestCompletion:

    def test_complete_issues_session(self, flow, auth_db, store, sample_user, totp_secret):
        store.set_two_factor_enabled(sample_user["user_id"], False)
        session = _login(flow, sample_user)

        account = flow.complete(session)

        assert account.account_id == sample_user["user_id"]
        assert auth_db.validate_session(account.token) is not None
        assert auth_db.get_user_by_email(sample_user["email"]).last_login is not None

    @pytest.mark.parametrize("state", [s for s in FlowState if s != FlowState.AUTHENTICATED])
    def test_complete_requires_authenticated(self, flow, sample_user, state):
        session = VerificationSession(state=state, account_id=sample_user["user_id"], email=sample_user["email"])

        with pytest.raises(InvalidFlowState):
            flow.complete(session)

    def test_session_serialization(self, flow, sample_user, totp_secret):
        session = _login(flow, sample_user)

        restored = VerificationSession.from_dict(session.to_dict())

        assert restored == session
        assert restored.state == FlowState.AWAITING_METHOD_CHOICE
