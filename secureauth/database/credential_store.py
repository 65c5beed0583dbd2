"""
Credential Store Client.

Reads and writes the per-account credential tables:
- profiles        (display data created at signup)
- user_2fa        (one TOTP secret per account)
- user_passkeys   (WebAuthn credentials)

Every query is scoped to the owning account. Database failures surface as
StoreError with the driver message attached and are never retried.
"""
import json
import uuid
import logging
from typing import Optional, List
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .auth_db import AuthDB, utcnow
from .models import Profile, TwoFactorSecret, PasskeyCredential
from ..auth.errors import StoreError

logger = logging.getLogger(__name__)

PASSKEY_COLUMNS = """
    id, user_id, credential_id, public_key, counter,
    device_name, created_at, last_used_at
"""


def _passkey_from_row(row) -> PasskeyCredential:
    return PasskeyCredential(
        id=str(row[0]),
        user_id=str(row[1]),
        credential_id=row[2],
        public_key=row[3],
        counter=row[4] or 0,
        device_name=row[5],
        created_at=row[6],
        last_used_at=row[7],
    )


class CredentialStore:
    """
    Access to two-factor secrets, passkeys and profiles.

    Example usage:
        store = CredentialStore(get_auth_db())

        if store.get_two_factor(user_id) is None:
            store.create_two_factor(user_id, secret)

        for passkey in store.list_passkeys(user_id):
            print(passkey.device_name)
    """

    def __init__(self, db: AuthDB):
        self.db = db

    @contextmanager
    def _session(self, operation: str):
        """Database session that reports failures as StoreError."""
        try:
            with self.db.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Credential store {operation} failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    # ==========================================
    # Profiles
    # ==========================================

    def get_profile(self, account_id: str) -> Optional[Profile]:
        with self._session("get_profile") as session:
            row = session.execute(
                text("""
                    SELECT id, email, full_name, created_at, updated_at
                    FROM profiles
                    WHERE id = :id
                """),
                {"id": account_id}
            ).fetchone()

        if not row:
            return None
        return Profile(
            id=str(row[0]),
            email=row[1],
            full_name=row[2],
            created_at=row[3],
            updated_at=row[4],
        )

    # ==========================================
    # Two-Factor Secrets
    # ==========================================

    def get_two_factor(self, account_id: str) -> Optional[TwoFactorSecret]:
        """
        Get the account's TOTP enrollment.

        Returns:
            TwoFactorSecret or None if 2FA was never set up.
        """
        with self._session("get_two_factor") as session:
            row = session.execute(
                text("""
                    SELECT id, user_id, secret, enabled, backup_codes,
                           created_at, updated_at
                    FROM user_2fa
                    WHERE user_id = :user_id
                """),
                {"user_id": account_id}
            ).fetchone()

        if not row:
            return None
        return TwoFactorSecret(
            id=str(row[0]),
            user_id=str(row[1]),
            secret=row[2],
            enabled=bool(row[3]),
            backup_codes=json.loads(row[4]) if row[4] else [],
            created_at=row[5],
            updated_at=row[6],
        )

    def create_two_factor(
        self,
        account_id: str,
        secret: str,
        backup_codes: Optional[List[str]] = None,
    ) -> TwoFactorSecret:
        """
        Store a confirmed TOTP secret.

        Args:
            account_id: Owning account.
            secret: Base32 TOTP secret.
            backup_codes: Bcrypt hashes of one-time recovery codes.

        Raises:
            StoreError: If the account already has a secret.
        """
        record_id = str(uuid.uuid4())
        now = utcnow()

        with self._session("create_two_factor") as session:
            session.execute(
                text("""
                    INSERT INTO user_2fa (
                        id, user_id, secret, enabled, backup_codes,
                        created_at, updated_at
                    ) VALUES (
                        :id, :user_id, :secret, TRUE, :backup_codes,
                        :created_at, :updated_at
                    )
                """),
                {
                    "id": record_id,
                    "user_id": account_id,
                    "secret": secret,
                    "backup_codes": json.dumps(backup_codes) if backup_codes else None,
                    "created_at": now,
                    "updated_at": now
                }
            )

        logger.info(f"Stored 2FA secret for user {account_id}")
        return TwoFactorSecret(
            id=record_id,
            user_id=account_id,
            secret=secret,
            enabled=True,
            backup_codes=backup_codes or [],
            created_at=now,
            updated_at=now,
        )

    def set_two_factor_enabled(self, account_id: str, enabled: bool) -> None:
        """
        Toggle whether sign-in requires a second factor.

        Raises:
            StoreError: If the account has no 2FA secret.
        """
        with self._session("set_two_factor_enabled") as session:
            result = session.execute(
                text("""
                    UPDATE user_2fa
                    SET enabled = :enabled, updated_at = :now
                    WHERE user_id = :user_id
                """),
                {"user_id": account_id, "enabled": enabled, "now": utcnow()}
            )
            updated = result.rowcount

        if not updated:
            raise StoreError("set_two_factor_enabled failed: 2FA is not set up for this account")
        logger.info(f"Updated 2FA for user {account_id}: enabled={enabled}")

    def get_backup_codes(self, account_id: str) -> List[str]:
        """Hashed backup codes for the account, empty if none remain."""
        two_factor = self.get_two_factor(account_id)
        return two_factor.backup_codes if two_factor else []

    def consume_backup_code(self, account_id: str, hashed_code: str) -> bool:
        """
        Remove a used backup code by its stored hash.

        The update only applies if the column still holds the list that was
        read, so when two requests race on one code exactly one of them
        consumes it and no other code is touched.

        Returns:
            True if this call consumed the code, False if it was already gone.
        """
        with self._session("consume_backup_code") as session:
            row = session.execute(
                text("SELECT backup_codes FROM user_2fa WHERE user_id = :user_id"),
                {"user_id": account_id}
            ).fetchone()
            stored = row[0] if row else None
            codes = json.loads(stored) if stored else []
            if hashed_code not in codes:
                return False

            codes.remove(hashed_code)
            result = session.execute(
                text("""
                    UPDATE user_2fa
                    SET backup_codes = :backup_codes, updated_at = :now
                    WHERE user_id = :user_id AND backup_codes = :stored
                """),
                {
                    "user_id": account_id,
                    "backup_codes": json.dumps(codes) if codes else None,
                    "stored": stored,
                    "now": utcnow()
                }
            )
            consumed = result.rowcount == 1

        if consumed:
            logger.info(f"Consumed backup code for user {account_id}, {len(codes)} remaining")
        return consumed

    # ==========================================
    # Passkeys
    # ==========================================

    def list_passkeys(self, account_id: str) -> List[PasskeyCredential]:
        """
        All passkeys registered by the account, oldest first.
        """
        with self._session("list_passkeys") as session:
            rows = session.execute(
                text(f"""
                    SELECT {PASSKEY_COLUMNS}
                    FROM user_passkeys
                    WHERE user_id = :user_id
                    ORDER BY created_at
                """),
                {"user_id": account_id}
            ).fetchall()

        return [_passkey_from_row(row) for row in rows]

    def has_passkeys(self, account_id: str) -> bool:
        with self._session("has_passkeys") as session:
            row = session.execute(
                text("SELECT 1 FROM user_passkeys WHERE user_id = :user_id LIMIT 1"),
                {"user_id": account_id}
            ).fetchone()
        return row is not None

    def create_passkey(self, record: PasskeyCredential) -> PasskeyCredential:
        """
        Persist a newly registered passkey.

        Raises:
            StoreError: If the credential id is already registered.
        """
        created_at = utcnow()
        with self._session("create_passkey") as session:
            session.execute(
                text("""
                    INSERT INTO user_passkeys (
                        id, user_id, credential_id, public_key, counter,
                        device_name, created_at, last_used_at
                    ) VALUES (
                        :id, :user_id, :credential_id, :public_key, :counter,
                        :device_name, :created_at, NULL
                    )
                """),
                {
                    "id": record.id,
                    "user_id": record.user_id,
                    "credential_id": record.credential_id,
                    "public_key": record.public_key,
                    "counter": record.counter,
                    "device_name": record.device_name,
                    "created_at": created_at
                }
            )

        logger.info(f"Stored passkey {record.id} for user {record.user_id}")
        return record.model_copy(update={"created_at": created_at})

    def record_passkey_use(self, passkey_id: str, counter: int) -> None:
        """
        Persist the signature counter after a verified assertion.
        """
        with self._session("record_passkey_use") as session:
            session.execute(
                text("""
                    UPDATE user_passkeys
                    SET counter = :counter, last_used_at = :now
                    WHERE id = :id
                """),
                {"id": passkey_id, "counter": counter, "now": utcnow()}
            )

    def delete_passkey(self, account_id: str, passkey_id: str) -> None:
        """
        Delete one of the account's passkeys.

        Raises:
            StoreError: If the account owns no passkey with that id.
        """
        with self._session("delete_passkey") as session:
            result = session.execute(
                text("""
                    DELETE FROM user_passkeys
                    WHERE id = :id AND user_id = :user_id
                """),
                {"id": passkey_id, "user_id": account_id}
            )
            deleted = result.rowcount

        if not deleted:
            raise StoreError("delete_passkey failed: passkey not found")
        logger.info(f"Deleted passkey {passkey_id} for user {account_id}")
