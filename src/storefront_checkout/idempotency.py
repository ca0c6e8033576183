"""
Idempotent checkout session creation.

A client may resend a session-creation request (network retry, double
click). With an ``Idempotency-Key`` the first completed attempt is cached
and replayed, so the platform never sees a second create for the same
cart. Reusing a key for a different cart is rejected; a failed attempt
releases the key so the client can retry.
"""
from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from storefront_checkout.errors import CheckoutError
from storefront_checkout.models import IdempotencyRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyError(CheckoutError):
    """Base exception for idempotency errors."""

    error_code = "IDEMPOTENCY_ERROR"
    http_status = 409


class IdempotencyKeyConflict(IdempotencyError):
    """Key reused with a different request."""

    error_code = "IDEMPOTENCY_KEY_CONFLICT"
    http_status = 422


class IdempotencyOperationInProgress(IdempotencyError):
    """Another request with the same key has not finished yet."""

    error_code = "IDEMPOTENCY_IN_PROGRESS"
    http_status = 409
    retryable = True


class IdempotencyStore(ABC):
    """Abstract interface for idempotency record storage."""

    @abstractmethod
    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        """Get an unexpired record by key."""
        pass

    @abstractmethod
    async def create(self, record: IdempotencyRecord) -> bool:
        """Create a record. Returns False if an unexpired one already exists."""
        pass

    @abstractmethod
    async def update(self, record: IdempotencyRecord) -> bool:
        pass

    @abstractmethod
    async def delete(self, idempotency_key: str) -> bool:
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired records. Returns count of removed records."""
        pass


class InMemoryIdempotencyStore(IdempotencyStore):
    """
    In-memory store for development and testing.

    Records live in one process only; multi-instance deployments need a
    shared store behind the same interface.
    """

    def __init__(self) -> None:
        self._records: Dict[str, IdempotencyRecord] = {}

    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        record = self._records.get(idempotency_key)
        if record and record.expires_at < _utcnow():
            del self._records[idempotency_key]
            return None
        return record

    async def create(self, record: IdempotencyRecord) -> bool:
        existing = self._records.get(record.idempotency_key)
        if existing is not None and existing.expires_at >= _utcnow():
            return False
        self._records[record.idempotency_key] = record
        return True

    async def update(self, record: IdempotencyRecord) -> bool:
        if record.idempotency_key not in self._records:
            return False
        self._records[record.idempotency_key] = record
        return True

    async def delete(self, idempotency_key: str) -> bool:
        return self._records.pop(idempotency_key, None) is not None

    async def cleanup_expired(self) -> int:
        now = _utcnow()
        expired = [key for key, record in self._records.items() if record.expires_at < now]
        for key in expired:
            del self._records[key]
        return len(expired)


class IdempotencyManager(Generic[T]):
    """
    Runs an operation at most once per idempotency key.

    Usage:
        manager = IdempotencyManager(InMemoryIdempotencyStore())
        session, replayed = await manager.execute(
            idempotency_key="LUNERA:abc",
            operation="create_session",
            request_data=payload,
            execute_fn=lambda: orchestrator.create_session(...),
            serialize_fn=CheckoutSession.to_dict,
            deserialize_fn=CheckoutSession.from_dict,
        )
    """

    def __init__(
        self,
        store: IdempotencyStore,
        default_ttl_hours: int = 24,
        lock_timeout_seconds: int = 60,
        cleanup_every: int = 100,
    ):
        self.store = store
        self.default_ttl_hours = default_ttl_hours
        self.lock_timeout_seconds = lock_timeout_seconds
        self.cleanup_every = max(1, cleanup_every)
        self._starts = 0

    @staticmethod
    def compute_request_hash(request_data: Dict[str, Any]) -> str:
        normalized = json.dumps(request_data, sort_keys=True, default=str)
        return hashlib.sha256(normalized.encode()).hexdigest()

    async def check(
        self,
        idempotency_key: str,
        request_data: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Look up a previous attempt under this key.

        Returns:
            The cached response of a completed attempt, or None when the
            operation should run

        Raises:
            IdempotencyKeyConflict: key was used with a different request
            IdempotencyOperationInProgress: an attempt is still running
        """
        record = await self.store.get(idempotency_key)
        if record is None:
            return None

        if record.request_hash != self.compute_request_hash(request_data):
            raise IdempotencyKeyConflict(
                f"Idempotency key '{idempotency_key}' was previously used with "
                f"a different cart"
            )

        if record.status == "pending":
            lock_expiry = record.created_at + timedelta(seconds=self.lock_timeout_seconds)
            if _utcnow() < lock_expiry:
                raise IdempotencyOperationInProgress(
                    f"Checkout with idempotency key '{idempotency_key}' is in progress",
                    retry_after=1,
                )
            logger.warning(f"Releasing stale idempotency lock for key '{idempotency_key}'")
            await self.store.delete(idempotency_key)
            return None

        if record.status == "completed" and record.response is not None:
            logger.info(f"Replaying cached response for idempotency key '{idempotency_key}'")
            return record.response

        # failed attempts may be retried
        await self.store.delete(idempotency_key)
        return None

    async def start(
        self,
        idempotency_key: str,
        operation: str,
        request_data: Dict[str, Any],
        tenant: Optional[str] = None,
    ) -> IdempotencyRecord:
        # expired records are swept on the first start and every cleanup_every after
        if self._starts % self.cleanup_every == 0:
            removed = await self.store.cleanup_expired()
            if removed:
                logger.info(f"Removed {removed} expired idempotency record(s)")
        self._starts += 1

        record = IdempotencyRecord(
            idempotency_key=idempotency_key,
            operation=operation,
            request_hash=self.compute_request_hash(request_data),
            status="pending",
            tenant=tenant,
            expires_at=_utcnow() + timedelta(hours=self.default_ttl_hours),
        )
        if not await self.store.create(record):
            raise IdempotencyOperationInProgress(
                f"Could not acquire lock for idempotency key '{idempotency_key}'",
                retry_after=1,
            )
        return record

    async def complete(
        self,
        idempotency_key: str,
        response: Dict[str, Any],
        session_id: Optional[str] = None,
    ) -> None:
        record = await self.store.get(idempotency_key)
        if record is None:
            logger.warning(f"Attempted to complete unknown idempotency key '{idempotency_key}'")
            return
        record.status = "completed"
        record.response = response
        record.completed_at = _utcnow()
        record.session_id = session_id
        await self.store.update(record)

    async def fail(self, idempotency_key: str, error_message: Optional[str] = None) -> None:
        record = await self.store.get(idempotency_key)
        if record is None:
            return
        record.status = "failed"
        record.completed_at = _utcnow()
        if error_message:
            record.response = {"error": error_message}
        await self.store.update(record)

    async def execute(
        self,
        idempotency_key: str,
        operation: str,
        request_data: Dict[str, Any],
        execute_fn: Callable[[], Awaitable[T]],
        serialize_fn: Callable[[T], Dict[str, Any]],
        deserialize_fn: Callable[[Dict[str, Any]], T],
        tenant: Optional[str] = None,
    ) -> Tuple[T, bool]:
        """
        Run ``execute_fn`` once for this key.

        Returns:
            (result, is_duplicate) where is_duplicate marks a replayed result
        """
        cached = await self.check(idempotency_key, request_data)
        if cached is not None:
            return deserialize_fn(cached), True

        await self.start(idempotency_key, operation, request_data, tenant)
        try:
            result = await execute_fn()
        except BaseException as e:
            await self.fail(idempotency_key, str(e) or type(e).__name__)
            raise

        serialized = serialize_fn(result)
        await self.complete(idempotency_key, serialized, serialized.get("sessionId"))
        return result, False
