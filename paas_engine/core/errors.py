# paas_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class PaasError(Exception):
    """Base class for all control plane errors."""

    retryable = False


# -----------------------------
# Validation / Domain Errors
# -----------------------------

class ValidationError(PaasError):
    """Invalid input, rejected before any job is enqueued."""
    pass


class InvalidStateError(PaasError):
    """Illegal state transition attempted."""
    pass


# -----------------------------
# Scheduling / Infrastructure Errors
# -----------------------------

class CapacityError(PaasError):
    """No eligible node has headroom for the requirement."""

    retryable = True


class TransientInfrastructureError(PaasError):
    """Network, clone, upload or backend failure worth retrying."""

    retryable = True


class QueueUnavailableError(TransientInfrastructureError):
    """Job store could not be reached."""
    pass


class BuildError(PaasError):
    """Source failed to build. Terminal for the Build, not the Application."""
    pass


class FatalAgentError(PaasError):
    """Worker agent cannot continue (e.g. container backend unreachable)."""
    pass


class AuthenticationError(PaasError):
    """Worker credential missing or rejected."""
    pass


# -----------------------------
# Lease / Ownership Errors
# -----------------------------

class LeaseError(PaasError):
    """Lease missing, expired, or owned by another worker."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class PersistenceError(PaasError):
    pass


class AlreadyExistsError(PersistenceError):
    pass


class NotFoundError(PersistenceError):
    pass


class ConcurrencyError(PersistenceError):
    pass


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    if isinstance(error, PaasError):
        return error.retryable
    return True
