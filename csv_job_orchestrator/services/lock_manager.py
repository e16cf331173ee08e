"""
Lease-based lock manager.

A lock is a row with an explicit ``expires_at``. Acquisition is a single
conditional insert-if-absent-or-expired, every reader treats an expired lock
as absent, and a holder that stops renewing simply loses the lease. No
sweeper is needed for correctness.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from ..models.lock import Lock, LockToken
from ..models.audit import AuditEventType, LogLevel
from ..models.job import utc_now
from ..utils.store import MetadataStore
from ..utils.logger import get_logger
from ..utils.metrics import OrchestratorMetrics
from ..core.exceptions import LockContentionError, LockExpiredError
from .audit_trail import AuditTrail


def _job_id_for(lock_key: str) -> str:
    return lock_key.split("#", 1)[0]


class LockManager:
    """Acquires, renews and releases leases in the metadata store."""

    def __init__(
        self,
        store: MetadataStore,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional[OrchestratorMetrics] = None,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger(__name__)

    async def acquire(self, lock_key: str, owner: str, lease_duration: float) -> LockToken:
        """
        Acquire a lease.

        Raises:
            LockContentionError: If another owner holds a non-expired lease
        """
        now = self.clock()
        lock = await self.store.acquire_lock(
            lock_key, owner, now + timedelta(seconds=lease_duration), now
        )

        if lock is None:
            holder = await self.get(lock_key)
            if self.metrics:
                self.metrics.lock_contention.inc()
            self.logger.info(f"Lock {lock_key} denied to {owner}", extra={
                "lock_key": lock_key,
                "holder": holder.owner if holder else None
            })
            await self._audit(owner, AuditEventType.LOCK_CONTENTION, lock_key,
                              f"Lock {lock_key} held by another execution",
                              {"lock_key": lock_key, "owner": owner,
                               "holder": holder.owner if holder else None},
                              LogLevel.WARN)
            raise LockContentionError(lock_key, holder.owner if holder else None)

        self.logger.debug(f"Lock {lock_key} acquired by {owner}")
        await self._audit(owner, AuditEventType.LOCK_ACQUIRED, lock_key, f"Lock {lock_key} acquired",
                          {"lock_key": lock_key, "owner": owner, "expires_at": lock.expires_at.isoformat(),
                           "version": lock.version})
        return lock.token()

    async def renew(self, token: LockToken, lease_duration: float) -> LockToken:
        """
        Extend a lease that is still held.

        Raises:
            LockExpiredError: If the lease expired or was taken over
        """
        now = self.clock()
        lock = await self.store.renew_lock(
            token.lock_key, token.owner, token.version,
            now + timedelta(seconds=lease_duration), now
        )
        if lock is None:
            raise LockExpiredError(token.lock_key, token.owner)

        await self._audit(token.owner, AuditEventType.LOCK_RENEWED, token.lock_key,
                          f"Lock {token.lock_key} renewed",
                          {"lock_key": token.lock_key, "owner": token.owner,
                           "expires_at": lock.expires_at.isoformat()},
                          LogLevel.DEBUG)
        return lock.token()

    async def release(self, token: LockToken) -> bool:
        """Release a lease. Best effort: a missed release heals by expiry."""
        released = await self.store.release_lock(token.lock_key, token.owner, token.version)
        if released:
            await self._audit(token.owner, AuditEventType.LOCK_RELEASED, token.lock_key,
                              f"Lock {token.lock_key} released",
                              {"lock_key": token.lock_key, "owner": token.owner})
        else:
            self.logger.info(f"Lock {token.lock_key} was no longer held by {token.owner}")
        return released

    async def get(self, lock_key: str) -> Optional[Lock]:
        """Current lease, or None if absent or expired."""
        lock = await self.store.get_lock(lock_key)
        if lock is None or lock.is_expired(self.clock()):
            return None
        return lock

    def keep_alive(
        self,
        token: LockToken,
        lease_duration: float,
        interval: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_lost: Optional[Callable[[LockToken], Awaitable[None]]] = None,
    ) -> "LeaseKeeper":
        """Start renewing ``token`` every ``interval`` seconds in the background."""
        keeper = LeaseKeeper(self, token, lease_duration, interval, sleep, on_lost)
        keeper.start()
        return keeper

    async def _audit(self, owner, event_type, lock_key, message, metadata, level=LogLevel.INFO):
        if self.audit is None:
            return
        await self.audit.record(
            owner, event_type, message,
            job_id=_job_id_for(lock_key),
            function_name="lock_manager",
            log_level=level,
            metadata=metadata,
        )


class LeaseKeeper:
    """Background renewal of one lease."""

    def __init__(
        self,
        manager: LockManager,
        token: LockToken,
        lease_duration: float,
        interval: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_lost: Optional[Callable[[LockToken], Awaitable[None]]] = None,
    ):
        self.manager = manager
        self.token = token
        self.lease_duration = lease_duration
        self.interval = interval
        self.sleep = sleep
        self.on_lost = on_lost
        self.lease_lost = False
        self._task: Optional[asyncio.Task] = None
        self._renewal: Optional[asyncio.Future] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            await self.sleep(self.interval)
            self._renewal = asyncio.ensure_future(self._renew())
            try:
                # stop() waits for an in-flight renewal instead of cancelling it
                await asyncio.shield(self._renewal)
            except LockExpiredError:
                self.lease_lost = True
                self.manager.logger.warning(
                    f"Lease on {self.token.lock_key} lost by {self.token.owner}",
                    extra={"lock_key": self.token.lock_key}
                )
                await self.manager._audit(
                    self.token.owner, AuditEventType.LOCK_LOST, self.token.lock_key,
                    f"Lease on {self.token.lock_key} could not be renewed",
                    {"lock_key": self.token.lock_key, "owner": self.token.owner},
                    LogLevel.WARN,
                )
                if self.on_lost is not None:
                    await self.on_lost(self.token)
                return
            except Exception as e:
                # Store hiccup: keep the current token and try again next interval
                self.manager.logger.warning(f"Lease renewal for {self.token.lock_key} failed: {e}")

    async def _renew(self):
        self.token = await self.manager.renew(self.token, self.lease_duration)

    async def stop(self) -> LockToken:
        """Stop renewing and return the latest token, after any renewal in flight settles."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._renewal is not None and not self._renewal.done():
            try:
                await self._renewal
            except Exception as e:
                self.manager.logger.warning(f"Lease renewal for {self.token.lock_key} did not complete: {e}")
        self._renewal = None
        return self.token
