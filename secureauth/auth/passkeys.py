"""
WebAuthn passkey ceremonies.

The browser runs navigator.credentials.create()/get(); this module issues
the options for those calls and verifies what comes back, using py_webauthn.

Registration:
1. registration_options()  -> options JSON + challenge to keep server-side
2. register()              -> verify attestation, store the credential

Authentication:
1. authentication_options() -> options JSON (allow-list of the account's keys)
2. authenticate()           -> verify the assertion signature against the
                               stored public key and advance the counter

When the browser ceremony fails, the client posts the DOMException name
instead of a credential; it is mapped to Cancelled or Unsupported.
"""
import base64
import json
import os
import secrets
import uuid
import logging
from typing import Any, Dict, List, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, options_to_json
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .errors import Cancelled, InvalidAssertion, NoPasskeys, Unsupported
from ..database.credential_store import CredentialStore
from ..database.models import PasskeyCredential

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
CEREMONY_TIMEOUT_MS = 60000

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

CANCELLED_ERRORS = {"NotAllowedError", "AbortError"}
UNSUPPORTED_ERRORS = {"NotSupportedError", "SecurityError"}


def encode_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_b64(data: str) -> bytes:
    return base64.b64decode(data)


def raise_for_client_error(client_error: Optional[str]) -> None:
    """
    Translate a browser-reported ceremony failure.

    Args:
        client_error: DOMException name from the browser, e.g. "NotAllowedError".
    """
    if not client_error:
        return
    if client_error in CANCELLED_ERRORS:
        raise Cancelled()
    if client_error in UNSUPPORTED_ERRORS:
        raise Unsupported()
    raise InvalidAssertion(f"Passkey ceremony failed: {client_error}")


def _options_to_dict(options: Any) -> Dict[str, Any]:
    """Serialize py_webauthn options with base64url binary fields."""
    return json.loads(options_to_json(options))


class PasskeyCeremony:
    """
    Server side of the WebAuthn registration and assertion ceremonies.

    Example usage:
        ceremony = PasskeyCeremony(store, rp_id="example.com",
                                   rp_name="Secure Auth App",
                                   origin="https://example.com")

        options, challenge = ceremony.registration_options(user_id, email)
        # ... browser calls navigator.credentials.create(options) ...
        passkey = ceremony.register(user_id, "My iPhone", challenge,
                                    credential=browser_response)
    """

    def __init__(
        self,
        store: CredentialStore,
        rp_id: str,
        rp_name: str,
        origin: str,
    ):
        self.store = store
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin

    @classmethod
    def from_env(cls, store: CredentialStore) -> "PasskeyCeremony":
        return cls(
            store,
            rp_id=os.getenv("WEBAUTHN_RP_ID", "localhost"),
            rp_name=os.getenv("WEBAUTHN_RP_NAME", "Secure Auth App"),
            origin=os.getenv("WEBAUTHN_ORIGIN", "http://localhost:8080"),
        )

    @staticmethod
    def _descriptors(passkeys: List[PasskeyCredential]) -> List[PublicKeyCredentialDescriptor]:
        return [
            PublicKeyCredentialDescriptor(id=decode_b64(passkey.credential_id))
            for passkey in passkeys
        ]

    # ==========================================
    # Registration
    # ==========================================

    def registration_options(self, account_id: str, email: str) -> Tuple[Dict[str, Any], bytes]:
        """
        Build options for navigator.credentials.create().

        Only platform authenticators with user verification are accepted,
        signing with ES256 or RS256. Keys the account already registered
        are excluded.

        Returns:
            Tuple of (options dict for the browser, challenge bytes).
        """
        existing = self.store.list_passkeys(account_id)

        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=account_id.encode(),
            user_name=email,
            user_display_name=email,
            challenge=secrets.token_bytes(CHALLENGE_BYTES),
            timeout=CEREMONY_TIMEOUT_MS,
            exclude_credentials=self._descriptors(existing),
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.DISCOURAGED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )
        return _options_to_dict(options), options.challenge

    def register(
        self,
        account_id: str,
        device_label: str,
        challenge: bytes,
        credential: Optional[Dict[str, Any]] = None,
        client_error: Optional[str] = None,
    ) -> PasskeyCredential:
        """
        Verify a registration response and store the new passkey.

        Raises:
            Cancelled: The user dismissed the browser prompt.
            Unsupported: The device cannot create passkeys.
            InvalidAssertion: The attestation did not verify.
            StoreError: The credential could not be persisted.
        """
        raise_for_client_error(client_error)
        if not credential:
            raise InvalidAssertion("No credential was returned")

        try:
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=True,
                supported_pub_key_algs=SUPPORTED_ALGORITHMS,
            )
        except WebAuthnException as e:
            logger.warning(f"Passkey registration verification failed: {e}")
            raise InvalidAssertion("Registration failed. Please try again.") from e

        record = PasskeyCredential(
            id=str(uuid.uuid4()),
            user_id=account_id,
            credential_id=encode_b64(verification.credential_id),
            public_key=encode_b64(verification.credential_public_key),
            counter=verification.sign_count,
            device_name=device_label,
        )
        passkey = self.store.create_passkey(record)
        logger.info(f"Passkey registered for user {account_id}")
        return passkey

    # ==========================================
    # Authentication
    # ==========================================

    def authentication_options(self, account_id: str) -> Tuple[Dict[str, Any], bytes]:
        """
        Build options for navigator.credentials.get().

        Raises:
            NoPasskeys: The account has no registered passkeys.
        """
        passkeys = self.store.list_passkeys(account_id)
        if not passkeys:
            raise NoPasskeys()

        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=secrets.token_bytes(CHALLENGE_BYTES),
            timeout=CEREMONY_TIMEOUT_MS,
            allow_credentials=self._descriptors(passkeys),
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return _options_to_dict(options), options.challenge

    def authenticate(
        self,
        account_id: str,
        challenge: bytes,
        credential: Optional[Dict[str, Any]] = None,
        client_error: Optional[str] = None,
    ) -> PasskeyCredential:
        """
        Verify an assertion against the account's stored passkey.

        The signature is checked with the stored public key and the
        authenticator's counter must advance; the new counter is persisted.

        Returns:
            The passkey that signed the assertion.

        Raises:
            NoPasskeys, Cancelled, Unsupported, InvalidAssertion, StoreError
        """
        raise_for_client_error(client_error)
        if not credential:
            raise InvalidAssertion("No credential was returned")

        passkeys = self.store.list_passkeys(account_id)
        if not passkeys:
            raise NoPasskeys()

        raw_id = credential.get("rawId") or credential.get("id")
        if not isinstance(raw_id, str):
            raise InvalidAssertion("Credential id missing from response")
        try:
            credential_id = encode_b64(base64url_to_bytes(raw_id))
        except ValueError as e:
            raise InvalidAssertion("Malformed credential id") from e

        stored = next((p for p in passkeys if p.credential_id == credential_id), None)
        if stored is None:
            raise InvalidAssertion("Unknown credential")

        try:
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=decode_b64(stored.public_key),
                credential_current_sign_count=stored.counter,
                require_user_verification=False,
            )
        except WebAuthnException as e:
            logger.warning(f"Passkey authentication failed for user {account_id}: {e}")
            raise InvalidAssertion("Authentication failed. Please try again.") from e

        self.store.record_passkey_use(stored.id, verification.new_sign_count)
        return stored.model_copy(update={"counter": verification.new_sign_count})
