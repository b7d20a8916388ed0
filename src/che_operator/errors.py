"""
Exception hierarchy shared by the reconcilers.

Handlers translate these into kopf errors: transient failures become
``kopf.TemporaryError`` and unrecoverable ones are written to the CR status
before a ``kopf.PermanentError`` stops retries until the CR changes.
"""


class CheOperatorError(Exception):
    """Base class for every error raised by the operator."""


class TransientError(CheOperatorError):
    """The operation may succeed if retried later."""

    def __init__(self, message: str, delay: float = 5):
        super().__init__(message)
        self.delay = delay


class UnrecoverableError(CheOperatorError):
    """The operation cannot succeed until the user changes the CR."""


class NeedRetryError(TransientError):
    """The object was modified concurrently, the update must be recomputed."""


class UnrecoverableSyncError(UnrecoverableError):
    """The API server rejected the object as invalid or forbidden."""


class BackupServerConfigError(UnrecoverableError):
    """The backup server configuration is incomplete or wrong."""


class ResticError(CheOperatorError):
    """The restic binary exited with a failure."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class ResticTimeoutError(ResticError):
    """The restic binary did not finish within its deadline and was killed."""


class StartupError(CheOperatorError):
    """The operator cannot start, for instance because CRDs are missing."""
