from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from pivotauth.storage.models import Account, PasswordResetRecord


class CredentialStore(Protocol):
    """Persistence contract for account rows and password-reset records.

    ``update`` is the only mutation path for an existing account. Passing
    ``expected_version`` turns it into a compare-and-set: the write applies
    only if the stored row still carries that version, otherwise
    ``WriteConflict`` is raised and nothing changes.
    """

    def create_account(
        self,
        identifier: str,
        *,
        role: str = "member",
        status: str = "active",
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Account: ...

    def find_by_identifier(
        self, identifier: str, *, role: Optional[str] = None
    ) -> Optional[Account]: ...

    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def update(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Account: ...

    def create_reset_record(self, record: PasswordResetRecord) -> PasswordResetRecord: ...

    def get_reset_record(self, token_hash: str) -> Optional[PasswordResetRecord]: ...

    def mark_reset_record_used(self, token_hash: str, used_at: datetime) -> bool: ...
