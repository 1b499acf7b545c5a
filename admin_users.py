"""
Admin credentials, kept in data/admin-users.json as {email: AdminUser}.

The file is seeded with the default admin on first access. A record that still
holds a plain-text password is rehashed the first time it matches.
"""
import hmac
import logging
from pathlib import Path
from typing import Dict

from passlib.context import CryptContext

from schemas import AdminUser
from storage import JsonDocument

logger = logging.getLogger(__name__)


class AdminUserStore:
    def __init__(self, path: Path, password_ctx: CryptContext, default_email: str, default_password: str):
        self.password_ctx = password_ctx
        self.default_email = default_email.strip().lower()
        self.default_password = default_password
        self.document = JsonDocument(path, seed=self._seed)

    def _seed(self) -> Dict[str, dict]:
        user = AdminUser(email=self.default_email, password_hash=self.password_ctx.hash(self.default_password))
        logger.info("Seeded admin users file with %s", user.email)
        return {user.email: user.model_dump(mode="json", by_alias=True)}

    def verify(self, email: str, password: str) -> bool:
        """
        Check a credential. `email` must already be normalized.

        Raises StorageError if the users file cannot be read or written.
        """
        with self.document.lock:
            users = self.document.load()
            record = users.get(email)
            if not record:
                self.password_ctx.dummy_verify()
                return False

            stored = record.get("passwordHash") or record.get("password") or ""
            if self.password_ctx.identify(stored, required=False):
                ok, new_hash = self.password_ctx.verify_and_update(password, stored)
                if ok and (new_hash or "password" in record):
                    self._store_hash(users, email, record, new_hash or stored)
                return ok

            if not hmac.compare_digest(stored.encode("utf-8"), password.encode("utf-8")):
                return False
            self._store_hash(users, email, record, self.password_ctx.hash(password))
            logger.info("Migrated legacy plain-text password for %s", email)
            return True

    def _store_hash(self, users: Dict[str, dict], email: str, record: dict, password_hash: str) -> None:
        record = dict(record)
        record.pop("password", None)
        record["passwordHash"] = password_hash
        record.setdefault("email", email)
        users[email] = record
        self.document.write(users)
