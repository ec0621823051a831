"""
Account Lock Manager

One mutual-exclusion lease per account key. ``acquire`` polls at a short
fixed interval until the key is free or the timeout elapses and reports
failure instead of queueing, which is the ledger's backpressure mechanism.

Leases expire after ``lease_seconds`` so a holder that died without releasing
cannot wedge the account. The in-memory manager serializes tasks inside one
process; the storage-backed manager keeps lease documents in the shared store
and takes them with conditional writes, so every instance sharing the store is
excluded.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
import asyncio
import time
import uuid

from .async_storage import AsyncStorageInterface
from .errors import LockTimeoutError, PersistenceFailure
from .logging_config import get_logger, log_action


def account_lock_key(account_id: str) -> str:
    return f"lock:{account_id}"


class AccountLockManager(ABC):
    """Base class: polling acquisition on top of a single non-blocking attempt"""

    def __init__(self, poll_interval: float = 0.05, lease_seconds: float = 30.0):
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.logger = get_logger("garden.locks")
        # Token of the most recent grant per key, for plain acquire()/release()
        self._tokens: Dict[str, str] = {}

    @abstractmethod
    async def try_acquire(self, key: str) -> Optional[str]:
        """Take the lease if it is free or expired; return its holder token"""
        pass

    @abstractmethod
    async def _release(self, key: str, token: Optional[str]) -> None:
        pass

    async def _acquire_token(self, key: str, timeout: float) -> Optional[str]:
        deadline = time.monotonic() + timeout
        while True:
            token = await self.try_acquire(key)
            if token is not None:
                return token
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def acquire(self, key: str, timeout: float = 5.0) -> bool:
        """
        Wait up to ``timeout`` seconds for the lease on ``key``.

        Returns:
            True if granted, False on timeout
        """
        token = await self._acquire_token(key, timeout)
        if token is None:
            log_action(
                self.logger, "warning", f"Lease not granted within {timeout}s",
                action="lock_timeout", extra={"key": key}
            )
            return False
        self._tokens[key] = token
        return True

    async def release(self, key: str, token: Optional[str] = None) -> None:
        """
        Free the lease on ``key``.

        With a token only that grant is released, so a holder whose lease
        already expired and was taken over cannot free the new holder.
        """
        if token is None:
            token = self._tokens.pop(key, None)
        elif self._tokens.get(key) == token:
            del self._tokens[key]
        await self._release(key, token)

    @asynccontextmanager
    async def lease(self, key: str, timeout: float = 5.0):
        """
        Hold the lease for the duration of the block.

        Raises:
            LockTimeoutError: If the lease was not granted in time
        """
        token = await self._acquire_token(key, timeout)
        if token is None:
            log_action(
                self.logger, "warning", f"Lease not granted within {timeout}s",
                action="lock_timeout", extra={"key": key}
            )
            raise LockTimeoutError(key, timeout)
        try:
            yield token
        finally:
            await self.release(key, token)


class InMemoryLockManager(AccountLockManager):
    """Process-local leases (single serving instance only)"""

    def __init__(self, poll_interval: float = 0.05, lease_seconds: float = 30.0):
        super().__init__(poll_interval, lease_seconds)
        self._leases: Dict[str, Tuple[str, float]] = {}

    async def try_acquire(self, key: str) -> Optional[str]:
        # No await between the check and the grant, so this is atomic per loop
        now = time.monotonic()
        current = self._leases.get(key)
        if current is not None:
            if current[1] > now:
                return None
            log_action(
                self.logger, "warning", "Taking over expired lease",
                action="lease_takeover", extra={"key": key}
            )
        token = str(uuid.uuid4())
        self._leases[key] = (token, now + self.lease_seconds)
        return token

    async def _release(self, key: str, token: Optional[str]) -> None:
        current = self._leases.get(key)
        if current is None:
            return
        if token is None or current[0] == token:
            del self._leases[key]

    def is_held(self, key: str) -> bool:
        current = self._leases.get(key)
        return current is not None and current[1] > time.monotonic()


class StorageLeaseLockManager(AccountLockManager):
    """
    Leases stored as documents in the shared store.

    A lease document is ``{holder, owner, expires_at, version}``. Taking a free
    or expired lease and releasing a held one are both conditional writes on
    ``version``, so two instances racing for the same key cannot both win.
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        poll_interval: float = 0.05,
        lease_seconds: float = 30.0,
        owner_id: Optional[str] = None
    ):
        super().__init__(poll_interval, lease_seconds)
        self.storage = storage
        self.owner_id = owner_id or str(uuid.uuid4())
        self.table_name = "account_leases"

    @staticmethod
    def _is_live(doc: Dict, now: datetime) -> bool:
        if not doc.get("holder") or not doc.get("expires_at"):
            return False
        return datetime.fromisoformat(doc["expires_at"]) > now

    async def try_acquire(self, key: str) -> Optional[str]:
        now = datetime.now(timezone.utc)
        token = str(uuid.uuid4())
        try:
            doc = await self.storage.load(self.table_name, key)
            if doc is not None and self._is_live(doc, now):
                return None

            lease_doc = {
                "id": key,
                "holder": token,
                "owner": self.owner_id,
                "acquired_at": now.isoformat(),
                "expires_at": (now + timedelta(seconds=self.lease_seconds)).isoformat(),
                "version": (doc or {}).get("version", 0) + 1,
            }
            expected = doc["version"] if doc is not None else None
            granted = await self.storage.conditional_save(self.table_name, key, lease_doc, expected)
        except Exception as e:
            raise PersistenceFailure(f"Failed to take lease {key}", e) from e

        if not granted:
            return None
        if doc is not None and doc.get("holder"):
            log_action(
                self.logger, "warning", "Took over expired lease",
                action="lease_takeover",
                extra={"key": key, "previous_owner": doc.get("owner")}
            )
        return token

    async def _release(self, key: str, token: Optional[str]) -> None:
        try:
            doc = await self.storage.load(self.table_name, key)
            if doc is None or not doc.get("holder"):
                return
            if token is not None and doc["holder"] != token:
                log_action(
                    self.logger, "warning", "Lease was taken over before release",
                    action="lease_lost", extra={"key": key}
                )
                return
            released = dict(doc, holder=None, expires_at=None, version=doc["version"] + 1)
            await self.storage.conditional_save(self.table_name, key, released, doc["version"])
        except Exception:
            # Left to expire after lease_seconds
            log_action(
                self.logger, "error", "Failed to release lease",
                action="lease_release_failed", extra={"key": key}, exc_info=True
            )
