"""Exceptions and the process-wide error reporter."""

from typing import Optional

from varmor.core import metrics
from varmor.core.logging import get_logger

logger = get_logger("varmor.errors")


class ControllerError(Exception):
    """Base exception for controller errors"""


class ResourceStoreError(ControllerError):
    """Error talking to the Kubernetes API"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(ResourceStoreError):
    """The requested object does not exist"""


class ConflictError(ResourceStoreError):
    """The object was modified concurrently (stale resourceVersion)"""


class ProfileGenerationError(ControllerError):
    """The policy could not be compiled into a profile"""


def handle_error(err: BaseException, key: Optional[str] = None, scope: str = "") -> None:
    """Report an error that the controller gave up on."""
    metrics.reconcile_errors.labels(scope=scope or "unknown").inc()
    logger.error(
        f"Dropping {key or 'item'} after repeated failures: {err}",
        exc_info=(type(err), err, err.__traceback__),
        extra={"key": key, "scope": scope},
    )


def handle_crash(err: BaseException, where: str) -> None:
    """Log an unexpected exception without letting it kill the calling loop."""
    logger.critical(
        f"Observed a panic in {where}: {err}",
        exc_info=(type(err), err, err.__traceback__),
    )
