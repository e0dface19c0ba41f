"""Exception hierarchy for the log processor."""


class LogProcessorError(Exception):
    """Base class for all log processor errors."""


class ConfigError(LogProcessorError):
    """Configuration could not be loaded or is inconsistent."""


class ConnectionSetupError(LogProcessorError):
    """One of the startup connections (queue, cache, index) failed."""


class ProcessingError(LogProcessorError):
    """A single job could not be processed and should be retried."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class IncompleteLogError(ProcessingError):
    """Not all expected log fragments have arrived yet."""


class InvalidLogError(ProcessingError):
    """Fragments were present but unusable (bad JSON, missing required fields)."""
