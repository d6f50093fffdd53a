# worker/errors.py


class WorkerError(Exception):
    """Base class for every error raised by the relay worker."""


class ConfigError(WorkerError):
    """Config file missing, unreadable or invalid. Fatal at startup."""


# --- session level: ends the current connection, supervisor reconnects ---


class SessionError(WorkerError):
    pass


class DialFailure(SessionError):
    pass


class AuthFailure(SessionError):
    pass


class AdvertiseFailure(SessionError):
    pass


class ConnectionClosed(SessionError):
    pass


class ProtocolError(SessionError):
    pass


# --- task level: logged, the dispatch loop keeps going ---


class TaskError(WorkerError):
    pass


class TaskDecodeError(TaskError):
    pass


class TaskValidationError(TaskError):
    pass


class BackendError(TaskError):
    pass


class TransmitError(WorkerError):
    """A single outbound frame could not be written. Best effort, not retried."""


class EnvelopeError(WorkerError):
    """Packaging a task result failed."""
