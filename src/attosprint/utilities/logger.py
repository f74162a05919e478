"""Logging setup for the attosprint CLI.

Library modules log through ``logging.getLogger(__name__)``.  The CLI
routes every stdlib record through structlog's processor chain, so
records emitted inside ``task_log_context`` carry ``project_id`` and
``task_id`` fields in both console and JSON output.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO, Any

import structlog

# Libraries that are chatty at DEBUG and never interesting for supervision.
_QUIET_LOGGERS = ("aiosqlite", "asyncio")


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=False),
        structlog.processors.StackInfoRenderer(),
    ]


def setup_logging(*, debug: bool = False, json_output: bool = False, stream: IO[str] | None = None) -> None:
    """Install one stderr handler on the root logger rendering via structlog.

    Args:
        debug: Log at DEBUG instead of INFO.
        json_output: One JSON object per line instead of the console renderer.
        stream: Where to write; stderr by default.
    """
    shared = _shared_processors()
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def task_log_context(project_id: str, task_id: str | None = None) -> Iterator[None]:
    """Tag every record logged inside the block with the project (and task)."""
    fields: dict[str, str] = {"project_id": project_id}
    if task_id:
        fields["task_id"] = task_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield
