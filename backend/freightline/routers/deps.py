"""Shared router dependencies and Idempotency-Key helpers."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional

from fastapi import Header
from fastapi.encoders import jsonable_encoder

from freightline.core.auth import CallerContext
from freightline.services.platform import FreightPlatform, get_platform


def platform() -> FreightPlatform:
    return get_platform()


IdempotencyKey = Header(default=None, alias="Idempotency-Key")


def _key(context: CallerContext, operation: str, key: str) -> str:
    return f"{context.user_id or 'anonymous'}:{operation}:{key.strip()}"


class IdempotencySlot:
    """One request's hold on an Idempotency-Key.

    ``cached`` is the earlier response when the key already completed.
    """

    def __init__(self, services: FreightPlatform, key: Optional[str], cached: Optional[Any] = None) -> None:
        self._services = services
        self._key = key
        self.cached = cached
        self.stored = False

    def store(self, response: Any) -> Any:
        """Persist the encoded response under the key and return it."""
        encoded = jsonable_encoder(response)
        if self._key:
            self._services.store.set_idempotent(self._key, encoded)
        self.stored = True
        return encoded


@contextmanager
def idempotent(services: FreightPlatform, context: CallerContext, operation: str, key: Optional[str]) -> Iterator[IdempotencySlot]:
    """Claim the key before the operation runs so duplicates cannot both execute.

    A concurrent duplicate gets a conflict while the first request is in
    flight. A failed request releases its claim so the client may retry.
    """
    if not key or not key.strip():
        yield IdempotencySlot(services, None)
        return

    scoped = _key(context, operation, key)
    cached = services.store.claim_idempotent(scoped)
    if cached is not None:
        yield IdempotencySlot(services, None, cached)
        return

    slot = IdempotencySlot(services, scoped)
    try:
        yield slot
    finally:
        if not slot.stored:
            services.store.release_idempotent(scoped)
