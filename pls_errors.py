"""Exception hierarchy for pls-fleet.

A non-zero exit code is never an exception here; it is recorded on the
ExecutionStep and handed back to the generation service.
"""


class PlsError(Exception):
    """Base exception for pls-fleet."""
    pass


class ConfigError(PlsError):
    """Missing or invalid target, duplicate name, or a bad config file."""

    def __init__(self, message: str, key: str = ""):
        super().__init__(message)
        self.key = key


class RemoteConnectionError(PlsError):
    """The transport to a remote target could not be used."""

    def __init__(self, message: str, target: str = ""):
        super().__init__(message)
        self.target = target


class ConnectTimeoutError(RemoteConnectionError):
    """The remote host did not answer within the connect timeout."""
    pass


class AuthFailedError(RemoteConnectionError):
    """The remote host rejected our credentials."""
    pass


class MissingDependencyError(RemoteConnectionError):
    """A helper binary needed for this auth mode is not installed."""

    def __init__(self, message: str, target: str = "", dependency: str = ""):
        super().__init__(message, target=target)
        self.dependency = dependency


class SecretPromptCancelled(RemoteConnectionError):
    """The user interrupted the password prompt."""
    pass


class GenerationError(PlsError):
    """The generation service failed or returned something that is not a plan."""
    pass


class PersistenceError(PlsError):
    """A store could not be written."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path
