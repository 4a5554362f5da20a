import logging
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

# Handler signature: async def handler(conn: AsyncConnection, payload: dict) -> None
HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]

# One handler per job_type
_registry: dict[str, HandlerFn] = {}

# Job types whose handler opens and commits its own transactions
_owns_transaction: set[str] = set()


def register(
    job_type: str, *, owns_transaction: bool = False
) -> Callable[[HandlerFn], HandlerFn]:
    """Register a handler for a job_type (e.g. 'recommendation.assess').

    By default the worker runs the handler inside the transaction that also
    completes the job. With ``owns_transaction=True`` the handler receives an
    autocommit connection and scopes its own transactions, so long waits
    (model calls) happen with no transaction open.
    """

    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = fn
        if owns_transaction:
            _owns_transaction.add(job_type)
        logger.info("Registered handler for job_type=%s", job_type)
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    return _registry.get(job_type)


def owns_transaction(job_type: str) -> bool:
    return job_type in _owns_transaction


def registered_types() -> list[str]:
    return list(_registry.keys())
