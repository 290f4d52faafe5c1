"""Persistence layer for orgflow workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import OrgflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

SQLITE_SCHEME = "sqlite://"

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[OrgflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow store.

    ``sqlite://<path>`` opens a SQLite file; with no URL at all, workflow
    state lives in memory for the life of the process. The URL is taken
    from the argument, then ``ORGFLOW_DATABASE_URL``, then ``DATABASE_URL``,
    then ``database_url`` in the orgflow config. A call without arguments
    reuses the store created by the previous call.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("ORGFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
    elif database_url.startswith(SQLITE_SCHEME):
        _repository_instance = SQLiteWorkflowRepository(database_url[len(SQLITE_SCHEME):])
    else:
        raise ValueError(
            f"orgflow stores workflows in SQLite ({SQLITE_SCHEME}<path>) or in memory; "
            f"cannot open {database_url!r}"
        )
    return _repository_instance


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
