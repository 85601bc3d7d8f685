import logging
import os
from typing import cast

from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.infrastructure.proposals import (
    InMemoryProposalRepository,
    PostgresProposalRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MS = 5000
DEFAULT_IDEMPOTENCY_CACHE_MAX_SIZE = 1000
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 86400


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        logger.warning(
            "config.invalid_integer",
            extra={"extra_fields": {"variable": name, "value": value, "default": default}},
        )
        return default
    return max(parsed, minimum)


def proposal_store_backend_name() -> str:
    backend = os.getenv("PROPOSAL_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    return "IN_MEMORY"


def proposal_postgres_dsn() -> str:
    return os.getenv("PROPOSAL_POSTGRES_DSN", "").strip()


def proposal_postgres_lock_timeout_ms() -> int:
    return _env_int("PROPOSAL_POSTGRES_LOCK_TIMEOUT_MS", DEFAULT_LOCK_TIMEOUT_MS)


def idempotency_cache_max_size() -> int:
    return _env_int("PROPOSAL_IDEMPOTENCY_CACHE_MAX_SIZE", DEFAULT_IDEMPOTENCY_CACHE_MAX_SIZE)


def idempotency_ttl_seconds() -> int:
    return _env_int("PROPOSAL_IDEMPOTENCY_TTL_SECONDS", DEFAULT_IDEMPOTENCY_TTL_SECONDS)


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_repository() -> ProposalRepository:
    backend = proposal_store_backend_name()
    lock_timeout_ms = proposal_postgres_lock_timeout_ms()
    if backend == "POSTGRES":
        dsn = proposal_postgres_dsn()
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        try:
            return cast(
                ProposalRepository,
                PostgresProposalRepository(dsn=dsn, lock_timeout_ms=lock_timeout_ms),
            )
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("PROPOSAL_POSTGRES_CONNECTION_FAILED") from exc
    return cast(
        ProposalRepository,
        InMemoryProposalRepository(lock_timeout_seconds=lock_timeout_ms / 1000),
    )
