"""
Logging context helpers for propagating run/session identifiers.

Usage:

    from codejoin_Exec_API.app.core.Logging.log_context import log_context, new_run_id

    run_id = new_run_id()
    with log_context(run_id=run_id, language="python", sbx_component="batch") as log:
        log.info("Starting run")
        ...

The context manager contextualizes the base logger (so nested logs inherit
the fields) and returns a bound logger for convenience.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Any, Optional
import uuid

from loguru import logger


def new_run_id() -> str:
    """Return a new opaque run identifier (hex)."""
    return uuid.uuid4().hex


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    """Context manager that sets structured logging fields and yields a bound logger.

    - Adds fields to the logger context (via logger.contextualize) so that any
      logs emitted inside the context inherit them.
    - Yields a logger bound with the same fields for direct use.
    """
    clean = {k: v for k, v in fields.items() if v is not None}
    with logger.contextualize(**clean):
        bound = logger.bind(**clean)
        yield bound


def get_sandbox_logger(
    *,
    run_id: Optional[str] = None,
    session_id: Optional[str] = None,
    sandbox_id: Optional[str] = None,
    owner: Optional[str] = None,
    language: Optional[str] = None,
    sbx_component: Optional[str] = None,
):
    """Return a logger bound with the common sandbox fields.

    Used by long-lived threads (session readers, the idle sweeper) that log
    outside any `log_context` block.
    """
    fields: dict[str, Any] = {}
    if run_id is not None:
        fields["run_id"] = run_id
    if session_id is not None:
        fields["session_id"] = session_id
    if sandbox_id is not None:
        fields["sandbox_id"] = sandbox_id
    if owner is not None:
        fields["owner"] = owner
    if language is not None:
        fields["language"] = language
    if sbx_component is not None:
        fields["sbx_component"] = sbx_component
    return logger.bind(**fields)
