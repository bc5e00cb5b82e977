"""Error taxonomy shared by every workgraph operation."""

import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class WorkgraphError(Exception):
    """Base class for failures surfaced to the CLI, dashboard and MCP tools."""


class NotInitializedError(WorkgraphError):
    """The workgraph directory or graph file does not exist."""


class NotFoundError(WorkgraphError):
    """An id does not resolve to a node, agent or executor."""


class InvalidTransitionError(WorkgraphError):
    """A status precondition was violated."""


class ConflictError(WorkgraphError):
    """Duplicate id, or the task is already claimed."""


class ValidationError(WorkgraphError):
    """Bad user input: empty title, unparsable duration, guard or timestamp."""


class ResourceExhaustedError(WorkgraphError):
    """A retry or loop-iteration limit has been reached."""


class ProcessError(WorkgraphError):
    """The OS refused to spawn or signal a process."""


class StorageError(WorkgraphError):
    """A store file could not be read, parsed or written."""


@contextmanager
def best_effort(action: str, level: int = logging.WARNING):
    """Run a side effect whose failure must never fail the caller."""
    try:
        yield
    except Exception:
        logger.log(level, "Best-effort %s failed", action, exc_info=True)
