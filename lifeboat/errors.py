"""Exception taxonomy for the recovery console."""


class LifeboatError(Exception):
    """Base class for every error raised by Lifeboat."""


class PortProbeFailure(LifeboatError):
    """The state of a port could not be determined.

    Distinct from "port is free": callers must not treat this as unbound.
    """

    def __init__(self, port, reason):
        super().__init__(f"Could not probe port {port}: {reason}")
        self.port = port
        self.reason = reason


class RemediationFailure(LifeboatError):
    """A recovery action did not fix the error it was dispatched for.

    Recorded on the recovery step; never aborts the session.
    """


class SessionConflict(LifeboatError):
    """A recovery was requested while another one is in progress."""


class CatastrophicFailure(LifeboatError):
    """An unexpected exception escaped a recovery run."""


class DatabaseUnavailable(LifeboatError):
    """The database round-trip failed or no connection string is configured."""


class MigrationFailed(LifeboatError):
    """The configured schema migration command exited unsuccessfully."""


class InvalidTransition(LifeboatError):
    """A step or session was moved backwards or out of a terminal state."""
