# deploy_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class DeployEngineError(Exception):
    """Base class for all deploy engine errors."""
    pass


# -----------------------------
# Validation Errors
# -----------------------------

class ValidationError(DeployEngineError):
    """Invalid input rejected synchronously. Never retried automatically."""
    pass


class InvalidStackName(ValidationError):
    pass


class ComposeParseError(ValidationError):
    """Compose source could not be parsed."""
    pass


class StackNameConflict(ValidationError):
    """Another deployment already uses the stack name."""
    pass


class NoDeploymentsSelected(ValidationError):
    pass


class InvalidRestoreRequest(ValidationError):
    pass


class TemplateNotFound(ValidationError):
    pass


# -----------------------------
# Lifecycle Errors
# -----------------------------

class InvalidTransition(DeployEngineError):
    """Operation not legal from the current status. Re-fetch before retrying."""

    def __init__(self, current, requested, message=None):
        self.current = current
        self.requested = requested
        super().__init__(
            message
            or f"Cannot {_value(requested)} deployment in {_value(current)} state"
        )


def _value(item):
    return getattr(item, "value", item)


# -----------------------------
# Orchestration Errors
# -----------------------------

class OrchestrationFailure(DeployEngineError):
    """The orchestration CLI failed. Drives the owning entity to FAILED."""

    def __init__(self, message, command=None, returncode=None, output=""):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class OrchestrationTimeout(OrchestrationFailure):
    pass


# -----------------------------
# Backup Errors
# -----------------------------

class IntegrityCheckFailed(DeployEngineError):
    """Archive content hash mismatch. Fatal and non-retryable."""
    pass


class StorageFailure(DeployEngineError):
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class PersistenceError(DeployEngineError):
    pass


class AlreadyExists(PersistenceError):
    pass


class NotFound(PersistenceError):
    pass


class ConcurrencyError(PersistenceError):
    pass
