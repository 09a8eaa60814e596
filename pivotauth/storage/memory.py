from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from pivotauth.logging import get_logger
from pivotauth.storage.errors import ConstraintViolation, StoreUnavailable, WriteConflict
from pivotauth.storage.models import (
    MUTABLE_ACCOUNT_FIELDS,
    Account,
    PasswordResetRecord,
    account_from_dict,
    account_to_dict,
    normalize_identifier,
)


class MemoryStore:
    """In-process credential store used for tests and single-node setups.

    Every read-modify-write runs under one re-entrant lock, so the
    compare-and-set in ``update`` is linearizable across worker threads.
    Accounts handed out are copies; mutating them does not touch the store.
    """

    def __init__(
        self,
        state_root: Optional[str] = None,
        *,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.reset_records: Dict[str, PasswordResetRecord] = {}
        # RLock so helpers can re-enter while a caller already holds it
        self._data_lock = threading.RLock()
        self.state_root = Path(state_root) if state_root else None
        if self.state_root:
            self.state_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material
        if not material:
            # ephemeral; a persisted state file is unreadable after restart
            material = secrets.token_urlsafe(64)
            if self.state_root:
                self.logger.warning("mfa_cipher_ephemeral_key")
        try:
            return Fernet(self._derive_cipher_key(material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            # written under another MFA_SECRET_KEY; a configuration fault, not bad input
            self.logger.error("mfa_secret_decrypt_failed")
            raise StoreUnavailable("mfa secret undecryptable") from exc

    def _state_path(self) -> Optional[Path]:
        if not self.state_root:
            return None
        state_dir = self.state_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        payload = {
            "accounts": [account_to_dict(acc) for acc in self.accounts.values()],
            "reset_records": [
                {
                    **asdict(rec),
                    "expires_at": rec.expires_at.isoformat(),
                    "created_at": rec.created_at.isoformat(),
                    "used_at": rec.used_at.isoformat() if rec.used_at else None,
                }
                for rec in self.reset_records.values()
            ],
        }
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None or not path.exists():
            return False
        try:
            payload = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.error("credential_state_load_failed", error=str(exc))
            return False
        for raw in payload.get("accounts", []):
            account = account_from_dict(raw)
            self.accounts[account.id] = account
        for raw in payload.get("reset_records", []):
            record = PasswordResetRecord(
                token_hash=raw["token_hash"],
                account_id=raw["account_id"],
                expires_at=datetime.fromisoformat(raw["expires_at"]),
                created_at=datetime.fromisoformat(raw["created_at"]),
                used_at=datetime.fromisoformat(raw["used_at"]) if raw.get("used_at") else None,
            )
            self.reset_records[record.token_hash] = record
        return True

    def _export(self, stored: Account) -> Account:
        account = stored.copy()
        account.mfa_secret = self._decrypt_mfa_secret(stored.mfa_secret)
        return account

    # accounts
    def create_account(
        self,
        identifier: str,
        *,
        role: str = "member",
        status: str = "active",
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Account:
        normalized = normalize_identifier(identifier)
        if not normalized:
            raise ConstraintViolation("identifier required", {"field": "identifier"})
        with self._data_lock:
            if any(
                acc.identifier == normalized and acc.role == role
                for acc in self.accounts.values()
            ):
                raise ConstraintViolation(
                    "identifier already exists", {"field": "identifier"}
                )
            account = Account(
                id=str(uuid.uuid4()),
                identifier=normalized,
                role=role,
                status=status,
                password_hash=password_hash,
                password_algo=password_algo,
                meta=dict(meta) if meta else {},
            )
            self.accounts[account.id] = account
            self._persist_state()
            return self._export(account)

    def find_by_identifier(
        self, identifier: str, *, role: Optional[str] = None
    ) -> Optional[Account]:
        normalized = normalize_identifier(identifier)
        with self._data_lock:
            for account in self.accounts.values():
                if account.identifier != normalized:
                    continue
                if role is not None and account.role != role:
                    continue
                return self._export(account)
        return None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._export(account) if account else None

    def update(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Account:
        unknown = set(changes) - MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        with self._data_lock:
            stored = self.accounts.get(account_id)
            if stored is None:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            if expected_version is not None and stored.version != expected_version:
                raise WriteConflict(account_id, expected_version, stored.version)
            updated = stored.copy()
            for name, value in changes.items():
                if name == "mfa_secret":
                    value = self._encrypt_mfa_secret(value)
                elif name == "mfa_recovery_codes":
                    value = list(value or [])
                setattr(updated, name, value)
            updated.version = stored.version + 1
            self.accounts[account_id] = updated
            self._persist_state()
            return self._export(updated)

    # password reset records
    def create_reset_record(self, record: PasswordResetRecord) -> PasswordResetRecord:
        with self._data_lock:
            if record.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for reset", {"account_id": record.account_id}
                )
            if record.token_hash in self.reset_records:
                raise ConstraintViolation("reset token collision", {"field": "token_hash"})
            self.reset_records[record.token_hash] = record
            self._persist_state()
            return record

    def get_reset_record(self, token_hash: str) -> Optional[PasswordResetRecord]:
        with self._data_lock:
            record = self.reset_records.get(token_hash)
            if record is None:
                return None
            return PasswordResetRecord(**asdict(record))

    def mark_reset_record_used(self, token_hash: str, used_at: datetime) -> bool:
        with self._data_lock:
            record = self.reset_records.get(token_hash)
            if record is None or record.used_at is not None:
                return False
            record.used_at = used_at
            self._persist_state()
            return True
