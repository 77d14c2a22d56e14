from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from ..core.errors import DuplicateIdempotencyKeyError
from .repository import LedgerRepository


def _to_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    return value


def _dumps(value: Any) -> str:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return json.dumps(value, default=_to_json, sort_keys=True)


class IdempotencyStore:
    """Answers a retried request with the response its first attempt produced.

    Keys are scoped per route. Reusing a key with a different request body
    is refused rather than silently replayed.
    """

    def __init__(self, repository: LedgerRepository) -> None:
        self.repository = repository

    def replay(self, route: str, key: Optional[str], signature: tuple) -> Optional[str]:
        if not key:
            return None
        stored = self.repository.fetch_idempotency(route, key)
        if stored is None:
            return None
        if stored.request_signature != _dumps(signature):
            raise DuplicateIdempotencyKeyError()
        return stored.response_payload

    def remember(self, route: str, key: Optional[str], signature: tuple, response: Any) -> None:
        """Stage the response in the caller's transaction; it commits with the movement."""
        if not key:
            return
        self.repository.save_idempotency(
            route=route,
            key=key,
            signature=_dumps(signature),
            payload=_dumps(response),
        )
