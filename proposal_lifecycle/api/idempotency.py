import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any, Callable, Optional

from proposal_lifecycle.core.errors import ConcurrencyError

REPLAY_HEADER = "X-Idempotency-Replayed"


class IdempotencyConflictError(ConcurrencyError):
    code = "IDEMPOTENCY_KEY_CONFLICT"

    def __init__(self, *, key: str, code: Optional[str] = None, message: Optional[str] = None):
        super().__init__(
            message or "Idempotency-Key was already used with a different request payload.",
            code=code,
            context={"idempotency_key": key},
        )


@dataclass(frozen=True)
class CachedResponse:
    request_hash: str
    status_code: int
    body: Any
    stored_at: float


@dataclass
class _PendingClaim:
    request_hash: str
    done: Event = field(default_factory=Event)


def hash_request_payload(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


class IdempotencyReplayCache:
    """Bounded, TTL-limited cache of first successful responses per key.

    ``reserve`` either returns the cached response for a key or claims the key
    for the caller, who must then ``store`` a response or ``release`` the claim.
    A second caller reserving a claimed key blocks until the claim resolves and
    then replays, or gives up with ``IDEMPOTENCY_KEY_IN_PROGRESS`` after
    ``wait_timeout_seconds``.

    Entries are evicted least-recently-used once ``max_size`` is exceeded and
    ignored once older than ``ttl_seconds``. Reusing a key with a different
    request payload raises ``IdempotencyConflictError``.
    """

    def __init__(
        self,
        *,
        max_size: int,
        ttl_seconds: int,
        wait_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_size = max_size
        self._ttl_seconds = ttl_seconds
        self._wait_timeout_seconds = wait_timeout_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: "OrderedDict[str, CachedResponse]" = OrderedDict()
        self._claims: dict[str, _PendingClaim] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def reserve(self, key: str, *, request_hash: str) -> Optional[CachedResponse]:
        while True:
            with self._lock:
                entry = self._live_entry(key)
                if entry is not None:
                    if entry.request_hash != request_hash:
                        raise IdempotencyConflictError(key=key)
                    self._entries.move_to_end(key)
                    return entry
                claim = self._claims.get(key)
                if claim is None:
                    self._claims[key] = _PendingClaim(request_hash=request_hash)
                    return None
                if claim.request_hash != request_hash:
                    raise IdempotencyConflictError(key=key)
            if not claim.done.wait(self._wait_timeout_seconds):
                raise IdempotencyConflictError(
                    key=key,
                    code="IDEMPOTENCY_KEY_IN_PROGRESS",
                    message="A request with this Idempotency-Key is still being processed.",
                )

    def store(self, key: str, *, request_hash: str, status_code: int, body: Any) -> None:
        with self._lock:
            if 200 <= status_code < 300 and self._live_entry(key) is None:
                self._entries[key] = CachedResponse(
                    request_hash=request_hash,
                    status_code=status_code,
                    body=body,
                    stored_at=self._clock(),
                )
                self._entries.move_to_end(key)
                while len(self._entries) > self._max_size:
                    self._entries.popitem(last=False)
            self._release_claim(key)

    def release(self, key: str) -> None:
        with self._lock:
            self._release_claim(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for key in list(self._claims):
                self._release_claim(key)

    def _live_entry(self, key: str) -> Optional[CachedResponse]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self._ttl_seconds:
            del self._entries[key]
            return None
        return entry

    def _release_claim(self, key: str) -> None:
        claim = self._claims.pop(key, None)
        if claim is not None:
            claim.done.set()
