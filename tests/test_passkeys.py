"""
Tests for the WebAuthn passkey ceremonies.

Signature and attestation checks belong to py_webauthn and are patched
out; these tests cover options, storage, the signature counter and the
mapping of browser errors.
"""
import uuid
from types import SimpleNamespace

import pytest
from unittest.mock import patch
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidRegistrationResponse,
)

from secureauth.auth.errors import Cancelled, InvalidAssertion, NoPasskeys, Unsupported
from secureauth.auth.passkeys import (
    CHALLENGE_BYTES,
    decode_b64,
    encode_b64,
    raise_for_client_error,
)
from secureauth.database.models import PasskeyCredential


# base64url of b"cred-1"
RAW_ID = "Y3JlZC0x"


def _credential(raw_id: str = RAW_ID) -> dict:
    return {
        "id": raw_id,
        "rawId": raw_id,
        "type": "public-key",
        "response": {
            "clientDataJSON": "e30",
            "authenticatorData": "AAAA",
            "signature": "AAAA",
        },
    }


@pytest.fixture
def stored_passkey(store, sample_user):
    return store.create_passkey(PasskeyCredential(
        id=str(uuid.uuid4()),
        user_id=sample_user["user_id"],
        credential_id=encode_b64(b"cred-1"),
        public_key=encode_b64(b"cose-public-key"),
        counter=3,
        device_name="My iPhone",
    ))


class TestClientErrors:

    @pytest.mark.parametrize("name", ["NotAllowedError", "AbortError"])
    def test_cancelled(self, name):
        with pytest.raises(Cancelled):
            raise_for_client_error(name)

    @pytest.mark.parametrize("name", ["NotSupportedError", "SecurityError"])
    def test_unsupported(self, name):
        with pytest.raises(Unsupported):
            raise_for_client_error(name)

    def test_other_error(self):
        with pytest.raises(InvalidAssertion):
            raise_for_client_error("InvalidStateError")

    def test_no_error(self):
        raise_for_client_error(None)


class TestRegistration:

    def test_registration_options(self, ceremony, sample_user):
        options, challenge = ceremony.registration_options(sample_user["user_id"], sample_user["email"])

        assert len(challenge) == CHALLENGE_BYTES
        assert options["rp"]["id"] == "localhost"
        assert options["user"]["name"] == sample_user["email"]
        assert options["timeout"] == 60000
        assert options["authenticatorSelection"]["authenticatorAttachment"] == "platform"
        assert options["authenticatorSelection"]["userVerification"] == "required"
        assert [p["alg"] for p in options["pubKeyCredParams"]] == [-7, -257]

    def test_existing_passkeys_excluded(self, ceremony, sample_user, stored_passkey):
        options, _ = ceremony.registration_options(sample_user["user_id"], sample_user["email"])

        assert [c["id"] for c in options["excludeCredentials"]] == [RAW_ID]

    def test_challenges_are_fresh(self, ceremony, sample_user):
        _, first = ceremony.registration_options(sample_user["user_id"], sample_user["email"])
        _, second = ceremony.registration_options(sample_user["user_id"], sample_user["email"])

        assert first != second

    def test_register_stores_passkey(self, ceremony, store, sample_user):
        verification = SimpleNamespace(
            credential_id=b"new-credential",
            credential_public_key=b"cose-key",
            sign_count=0,
        )
        with patch("secureauth.auth.passkeys.verify_registration_response", return_value=verification) as verify:
            passkey = ceremony.register(
                sample_user["user_id"], "Laptop", b"challenge", credential=_credential()
            )

        assert verify.call_args.kwargs["expected_challenge"] == b"challenge"
        assert verify.call_args.kwargs["require_user_verification"] is True
        assert decode_b64(passkey.credential_id) == b"new-credential"
        assert decode_b64(passkey.public_key) == b"cose-key"

        passkeys = store.list_passkeys(sample_user["user_id"])
        assert [p.device_name for p in passkeys] == ["Laptop"]

    def test_register_verification_failure(self, ceremony, store, sample_user):
        with patch(
            "secureauth.auth.passkeys.verify_registration_response",
            side_effect=InvalidRegistrationResponse("bad attestation"),
        ):
            with pytest.raises(InvalidAssertion):
                ceremony.register(sample_user["user_id"], "Laptop", b"challenge", credential=_credential())

        assert store.list_passkeys(sample_user["user_id"]) == []

    def test_register_cancelled(self, ceremony, sample_user):
        with pytest.raises(Cancelled):
            ceremony.register(sample_user["user_id"], "Laptop", b"challenge", client_error="NotAllowedError")

    def test_register_without_credential(self, ceremony, sample_user):
        with pytest.raises(InvalidAssertion):
            ceremony.register(sample_user["user_id"], "Laptop", b"challenge")


class TestAuthentication:

    def test_no_passkeys(self, ceremony, sample_user):
        with pytest.raises(NoPasskeys):
            ceremony.authentication_options(sample_user["user_id"])

    def test_authentication_options(self, ceremony, sample_user, stored_passkey):
        options, challenge = ceremony.authentication_options(sample_user["user_id"])

        assert len(challenge) == CHALLENGE_BYTES
        assert options["rpId"] == "localhost"
        assert options["timeout"] == 60000
        assert [c["id"] for c in options["allowCredentials"]] == [RAW_ID]

    def test_authenticate_advances_counter(self, ceremony, store, sample_user, stored_passkey):
        with patch(
            "secureauth.auth.passkeys.verify_authentication_response",
            return_value=SimpleNamespace(new_sign_count=4),
        ) as verify:
            passkey = ceremony.authenticate(sample_user["user_id"], b"challenge", credential=_credential())

        assert verify.call_args.kwargs["credential_public_key"] == b"cose-public-key"
        assert verify.call_args.kwargs["credential_current_sign_count"] == 3
        assert passkey.id == stored_passkey.id
        assert passkey.counter == 4

        stored = store.list_passkeys(sample_user["user_id"])[0]
        assert stored.counter == 4
        assert stored.last_used_at is not None

    def test_bad_signature(self, ceremony, store, sample_user, stored_passkey):
        with patch(
            "secureauth.auth.passkeys.verify_authentication_response",
            side_effect=InvalidAuthenticationResponse("signature mismatch"),
        ):
            with pytest.raises(InvalidAssertion):
                ceremony.authenticate(sample_user["user_id"], b"challenge", credential=_credential())

        assert store.list_passkeys(sample_user["user_id"])[0].counter == 3

    def test_unknown_credential(self, ceremony, sample_user, stored_passkey):
        # base64url of b"other"
        with pytest.raises(InvalidAssertion):
            ceremony.authenticate(sample_user["user_id"], b"challenge", credential=_credential("b3RoZXI"))

    def test_unsupported_device(self, ceremony, sample_user, stored_passkey):
        with pytest.raises(Unsupported):
            ceremony.authenticate(sample_user["user_id"], b"challenge", client_error="NotSupportedError")
