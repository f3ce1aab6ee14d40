"""
Error Hierarchy
===============

Three families of failures cross the coordination core:

- Contention: a lock could not be taken in time. Expected and non-fatal,
  the caller retries or moves on.
- Validation: a request that violates the task state machine or the
  hierarchy policy. Always raised to the caller.
- Launch: the session launcher could not start a worker. Converted into
  a recorded error by the fleet manager.

Liveness failures (unresponsive workers) are never raised; the health
check loop handles them.
"""

from typing import Optional


class TaskFleetError(Exception):
    """Base class for all taskfleet errors"""


# =============================================================================
# Contention
# =============================================================================

class ContentionError(TaskFleetError):
    """An operation lost a race and should be retried later"""


class LockTimeout(ContentionError):
    """Advisory lock could not be acquired before the timeout"""

    def __init__(self, lock_path: str, timeout: float):
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(
            f"Could not acquire lock {lock_path} within {timeout:.1f}s, retry later"
        )


# =============================================================================
# Validation
# =============================================================================

class ValidationError(TaskFleetError):
    """A request was rejected before any state changed"""


class TaskNotFound(ValidationError):
    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class WorkerNotFound(ValidationError):
    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} not found")


class InvalidTransition(ValidationError):
    """Requested status change is not an edge of the state machine"""

    def __init__(self, task_id: int, current: str, requested: str, reason: Optional[str] = None):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        message = f"Task {task_id} cannot move from {current} to {requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ProvisioningRejected(ValidationError):
    """Provisioning would break a hierarchy or emergency-brake limit"""

    def __init__(self, reason: str, layer: Optional[int] = None, parent_id: Optional[str] = None):
        self.reason = reason
        self.layer = layer
        self.parent_id = parent_id
        super().__init__(f"Provisioning rejected: {reason}")


# =============================================================================
# Launching & backends
# =============================================================================

class LaunchError(TaskFleetError):
    """The session launcher failed to start a worker"""


class UnsupportedOperation(TaskFleetError):
    """The active store backend does not implement this primitive"""
