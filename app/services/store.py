from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.services.errors import StoreUnavailable

T = TypeVar("T")
_LOG = logging.getLogger("app.store")


@contextmanager
def store_errors(db: Session):
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        db.rollback()
        raise StoreUnavailable() from exc


async def run_store_call(
    session_factory: Callable[[], Session],
    func: Callable[..., T],
    *args: Any,
    timeout: float | None = None,
    writes: bool = True,
    **kwargs: Any,
) -> T:
    """Run ``func(db, *args, **kwargs)`` in the threadpool with its own session.

    Read-only calls are bounded by ``STORE_TIMEOUT_SECONDS`` and surface expiry
    as ``StoreUnavailable``. A worker thread cannot be cancelled, so a write
    that overruns the bound is awaited to completion and its real outcome is
    returned; the database side bound (pool timeout, ``statement_timeout``)
    turns a stuck write into ``StoreUnavailable`` from inside the worker.
    """

    def _call() -> T:
        db = session_factory()
        try:
            with store_errors(db):
                return func(db, *args, **kwargs)
        finally:
            db.close()

    limit = float(timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS)
    task = asyncio.ensure_future(run_in_threadpool(_call))
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=limit)
    except asyncio.TimeoutError as exc:
        if not writes:
            _LOG.warning("store read timed out after %.2fs func=%s", limit, _name(func))
            task.add_done_callback(_discard_outcome)
            raise StoreUnavailable() from exc
    _LOG.warning("store write overran %.2fs func=%s, awaiting outcome", limit, _name(func))
    return await task


def _discard_outcome(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled() and task.exception() is not None:
        _LOG.debug("late store read failed: %s", task.exception())


def _name(func: Callable[..., Any]) -> str:
    return getattr(func, "__name__", type(func).__name__)
