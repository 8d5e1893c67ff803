"""Application error types.

Fatal errors (configuration, schema, library load, initial connect) stop
the process during startup. Everything else is handled where it occurs.
"""


class TraderError(Exception):
    """Base class for application errors."""


class ConfigError(TraderError):
    """Configuration file is missing or invalid."""


class SchemaMismatchError(TraderError):
    """Tick feed tables do not have the expected columns."""


class LibraryLoadError(TraderError):
    """The native transaction library could not be loaded."""


class TerminalConnectError(TraderError):
    """Initial connection to the terminal failed."""

    def __init__(self, message: str, result_code: int | None = None, error_code: int = 0):
        super().__init__(message)
        self.result_code = result_code
        self.error_code = error_code


class ConnectorError(TraderError):
    """A transaction was not accepted for transmission."""

    def __init__(self, message: str, result_code: int | None = None, error_code: int = 0):
        super().__init__(message)
        self.result_code = result_code
        self.error_code = error_code


class FeedUnavailableError(TraderError):
    """The tick feed failed repeatedly within one poll cycle."""
