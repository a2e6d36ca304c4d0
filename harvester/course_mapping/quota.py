"""
Quota Allocator - gates inference calls against a shared credential pool.

Each credential has a daily budget derived from its effective per-minute
rate. The allocator picks the credential with the most budget left and
reserves quota units before a call goes out:

    ACTIVE --(used_today >= daily_limit)--> EXHAUSTED
    EXHAUSTED --(reset_at passes)--> ACTIVE (used_today = 0)

Deactivated or deleted credentials are never selected.

The check-and-increment in reserve() is one atomic unit per credential
(a lock in memory, a conditional UPDATE in SQLite). Network calls are
made outside of it.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator, Optional

from .config import QuotaSettings
from .errors import NoCredentialAvailable, QuotaExceeded
from .models import CredentialRecord, CredentialState, UsageLogEntry

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_reset_after(now: datetime) -> datetime:
    """Next daily boundary (midnight UTC) strictly after now."""
    now = now.astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def make_credential(
    credential_id: str,
    nickname: str,
    api_key: str = "",
    settings: Optional[QuotaSettings] = None,
    now: Optional[datetime] = None,
) -> CredentialRecord:
    """Create a fresh credential with limits derived from the quota settings."""
    settings = settings or QuotaSettings()
    return CredentialRecord(
        id=credential_id,
        nickname=nickname,
        api_key=api_key,
        rate_limit_per_minute=settings.rate_limit_per_minute,
        daily_limit=settings.daily_limit,
        used_today=0,
        reset_at=next_reset_after(now or utcnow()),
    )


def apply_reset(credential: CredentialRecord, now: datetime) -> bool:
    """
    Roll a credential over to a new day if its boundary has passed.

    A credential without reset_at only gets a boundary assigned; its
    counter is left alone. Returns True if the credential changed.
    """
    if credential.reset_at is None:
        credential.reset_at = next_reset_after(now)
        return True
    if credential.reset_at <= now:
        credential.used_today = 0
        credential.reset_at = next_reset_after(now)
        return True
    return False


class CredentialStore(ABC):
    """
    Abstract interface for credential persistence.

    Implementations must make reserve() an atomic check-and-increment:
    two concurrent callers can never both spend the last unit.
    """

    @abstractmethod
    def list_active_credentials(self) -> list[CredentialRecord]:
        """Active, non-deleted credentials (snapshots, not live objects)."""
        pass

    @abstractmethod
    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        pass

    @abstractmethod
    def reserve(self, credential_id: str, n: int = 1) -> CredentialRecord:
        """
        Spend n quota units.

        Raises:
            QuotaExceeded: budget does not fit (state unchanged)
            KeyError: unknown credential
        """
        pass

    @abstractmethod
    def release(self, credential_id: str, n: int = 1) -> CredentialRecord:
        """Give back n units from a reservation whose call was never sent."""
        pass

    @abstractmethod
    def record_usage(self, entry: UsageLogEntry) -> None:
        """Append an immutable usage log entry."""
        pass

    @abstractmethod
    def reset_if_due(self, credential_id: str, now: Optional[datetime] = None) -> bool:
        """Reset the daily counter if the boundary has passed."""
        pass

    @abstractmethod
    def list_usage(self, credential_id: Optional[str] = None) -> list[UsageLogEntry]:
        pass


class InMemoryCredentialStore(CredentialStore):
    """
    Thread-safe in-memory credential store.

    Each credential has its own lock so reservations against different
    credentials never contend.
    """

    def __init__(
        self,
        credentials: Optional[Iterable[CredentialRecord]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._clock = clock
        self._credentials: dict[str, CredentialRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._usage: list[UsageLogEntry] = []
        self._usage_lock = threading.Lock()
        for credential in credentials or []:
            self.add_credential(credential)

    def add_credential(self, credential: CredentialRecord):
        """Add or replace a credential."""
        if credential.used_today < 0 or credential.used_today > credential.daily_limit:
            raise ValueError(
                f"Credential {credential.id}: used_today {credential.used_today} "
                f"outside 0..{credential.daily_limit}"
            )
        with self._registry_lock:
            self._credentials[credential.id] = replace(credential)
            self._locks.setdefault(credential.id, threading.Lock())

    def deactivate(self, credential_id: str):
        with self._lock_for(credential_id):
            self._credentials[credential_id].is_active = False

    def delete(self, credential_id: str):
        """Soft delete; the credential stays for audit but is never selected."""
        with self._lock_for(credential_id):
            self._credentials[credential_id].is_deleted = True

    def _lock_for(self, credential_id: str) -> threading.Lock:
        lock = self._locks.get(credential_id)
        if lock is None:
            raise KeyError(f"Unknown credential: {credential_id}")
        return lock

    def list_active_credentials(self) -> list[CredentialRecord]:
        with self._registry_lock:
            ids = list(self._credentials)
        active = []
        for credential_id in ids:
            with self._lock_for(credential_id):
                credential = self._credentials[credential_id]
                if credential.is_active and not credential.is_deleted:
                    active.append(replace(credential))
        return active

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        if credential_id not in self._locks:
            return None
        with self._lock_for(credential_id):
            return replace(self._credentials[credential_id])

    def reserve(self, credential_id: str, n: int = 1) -> CredentialRecord:
        if n < 1:
            raise ValueError("Reservation size must be positive")
        with self._lock_for(credential_id):
            credential = self._credentials[credential_id]
            apply_reset(credential, self._clock())
            if credential.state == CredentialState.DISABLED:
                raise QuotaExceeded(credential_id, n, 0)
            if credential.used_today + n > credential.daily_limit:
                raise QuotaExceeded(credential_id, n, credential.remaining)
            credential.used_today += n
            return replace(credential)

    def release(self, credential_id: str, n: int = 1) -> CredentialRecord:
        if n < 1:
            raise ValueError("Release size must be positive")
        with self._lock_for(credential_id):
            credential = self._credentials[credential_id]
            credential.used_today = max(0, credential.used_today - n)
            return replace(credential)

    def record_usage(self, entry: UsageLogEntry) -> None:
        with self._usage_lock:
            self._usage.append(entry)

    def reset_if_due(self, credential_id: str, now: Optional[datetime] = None) -> bool:
        with self._lock_for(credential_id):
            return apply_reset(self._credentials[credential_id], now or self._clock())

    def list_usage(self, credential_id: Optional[str] = None) -> list[UsageLogEntry]:
        with self._usage_lock:
            entries = list(self._usage)
        if credential_id is None:
            return entries
        return [e for e in entries if e.credential_id == credential_id]


class Reservation:
    """
    A held quota reservation.

    Call mark_sent() right before the request goes on the wire. A
    reservation that exits its context without being sent is released;
    once sent it stays committed whatever the outcome, because the
    provider counts attempted calls.
    """

    def __init__(self, credential: CredentialRecord, units: int):
        self.credential = credential
        self.units = units
        self.sent = False

    @property
    def credential_id(self) -> str:
        return self.credential.id

    def mark_sent(self):
        self.sent = True


class QuotaAllocator:
    """Selects credentials and owns all quota bookkeeping for the pipeline."""

    def __init__(self, store: CredentialStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    def acquire(self, exclude: Iterable[str] = ()) -> CredentialRecord:
        """
        Pick the usable credential with the most remaining daily budget.

        Raises:
            NoCredentialAvailable: nothing active, non-deleted and non-exhausted
        """
        excluded = set(exclude)
        now = self._clock()

        candidates = []
        for credential in self.store.list_active_credentials():
            if credential.id in excluded:
                continue
            if credential.reset_at is None or credential.reset_at <= now:
                self.store.reset_if_due(credential.id, now)
                refreshed = self.store.get_credential(credential.id)
                if refreshed is None:
                    continue
                credential = refreshed
            if credential.state != CredentialState.ACTIVE:
                continue
            candidates.append(credential)

        if not candidates:
            raise NoCredentialAvailable("No active credential with remaining quota")

        candidates.sort(key=lambda c: (-c.remaining, c.id))
        chosen = candidates[0]
        logger.debug(f"Acquired credential {chosen.nickname} ({chosen.remaining} remaining)")
        return chosen

    def reserve(self, credential_id: str, n: int = 1) -> CredentialRecord:
        """Atomically spend n units or raise QuotaExceeded."""
        return self.store.reserve(credential_id, n)

    def release(self, credential_id: str, n: int = 1) -> CredentialRecord:
        """Roll back n units of a reservation whose call never executed."""
        logger.info(f"Releasing {n} unit(s) on credential {credential_id}")
        return self.store.release(credential_id, n)

    def record_usage(self, entry: UsageLogEntry):
        self.store.record_usage(entry)

    @contextmanager
    def reservation(self, n: int = 1, exclude: Iterable[str] = ()) -> Iterator[Reservation]:
        """
        Acquire a credential and hold n units for the duration of the block.

        Lost reservation races move on to the next credential. Every
        reservation ends committed (sent) or released (not sent).

        Raises:
            NoCredentialAvailable: no credential could fit the reservation
        """
        tried = set(exclude)
        while True:
            credential = self.acquire(exclude=tried)
            try:
                reserved = self.reserve(credential.id, n)
                break
            except QuotaExceeded as e:
                logger.warning(f"Reservation race lost: {e}")
                tried.add(credential.id)

        held = Reservation(reserved, n)
        try:
            yield held
        finally:
            if not held.sent:
                self.release(held.credential_id, n)

    def reset_all_due(self, now: Optional[datetime] = None) -> int:
        """Reset every credential whose daily boundary has passed."""
        now = now or self._clock()
        count = 0
        for credential in self.store.list_active_credentials():
            if self.store.reset_if_due(credential.id, now):
                count += 1
        if count:
            logger.info(f"Daily quota reset applied to {count} credential(s)")
        return count

    def credential_stats(self) -> list[dict]:
        """Remaining budget per usable credential, most quota first."""
        stats = []
        for credential in self.store.list_active_credentials():
            percentage_used = (
                round(credential.used_today / credential.daily_limit * 100)
                if credential.daily_limit else 100
            )
            stats.append({
                "credential_id": credential.id,
                "nickname": credential.nickname,
                "state": credential.state.value,
                "used_today": credential.used_today,
                "remaining": credential.remaining,
                "daily_limit": credential.daily_limit,
                "percentage_used": percentage_used,
                "reset_at": credential.reset_at.isoformat() if credential.reset_at else None,
            })
        stats.sort(key=lambda s: -s["remaining"])
        return stats
