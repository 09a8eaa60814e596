from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pivotauth.logging import get_logger
from pivotauth.service.errors import ServerError
from pivotauth.storage.base import CredentialStore
from pivotauth.storage.errors import StoreUnavailable, WriteConflict
from pivotauth.storage.models import Account

# Returns the changes to write, or None when the fresh row needs none
ChangeFn = Callable[[Account], Optional[Dict[str, Any]]]


class AccountGateway:
    """Store access shared by the engine services.

    Reads and writes go through here so infrastructure failures surface as
    ``ServerError``. ``apply`` is the compare-and-set loop: it re-reads the
    row, recomputes the changes and retries on ``WriteConflict`` up to
    ``retries`` times.
    """

    def __init__(self, store: CredentialStore, *, retries: int = 3) -> None:
        self.store = store
        self.retries = max(1, retries)
        self.logger = get_logger(__name__)

    def find(self, identifier: str, role: str) -> Optional[Account]:
        try:
            return self.store.find_by_identifier(identifier, role=role)
        except StoreUnavailable as exc:
            self.logger.error("store_read_failed", error=str(exc))
            raise ServerError() from exc

    def load(self, account_id: str) -> Optional[Account]:
        try:
            return self.store.find_by_id(account_id)
        except StoreUnavailable as exc:
            self.logger.error("store_read_failed", error=str(exc))
            raise ServerError() from exc

    def apply(self, account_id: str, compute: ChangeFn) -> Optional[Account]:
        """Run ``compute`` against the current row and write its result atomically.

        Returns the stored account after the write (or unchanged when
        ``compute`` returned nothing), or None when the account is gone.
        Exceptions raised by ``compute`` propagate without a write.
        """
        for attempt in range(1, self.retries + 1):
            account = self.load(account_id)
            if account is None:
                return None
            changes = compute(account)
            if not changes:
                return account
            try:
                return self.store.update(account_id, changes, expected_version=account.version)
            except WriteConflict:
                self.logger.info(
                    "account_write_conflict", account_id=account_id, attempt=attempt
                )
            except StoreUnavailable as exc:
                self.logger.error("store_write_failed", account_id=account_id, error=str(exc))
                raise ServerError() from exc
        self.logger.error(
            "account_write_retries_exhausted", account_id=account_id, retries=self.retries
        )
        raise ServerError()


def advance_pivot(account: Account, now: datetime) -> datetime:
    """New ``security_pivot`` value; never moves backwards."""
    return max(account.security_pivot, now)


__all__ = ["AccountGateway", "advance_pivot"]
