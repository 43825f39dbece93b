"""Exception hierarchy shared by all agent components."""


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class ConfigError(AgentError):
    """Configuration is missing, unreadable or invalid."""


class UnknownSourceTypeError(ConfigError):
    """No parser is registered for a configured source type."""

    def __init__(self, source_type: str):
        super().__init__(f"unknown source type: {source_type!r}")
        self.source_type = source_type


class ParseError(AgentError):
    """A log line could not be turned into an event."""


class TailerError(AgentError):
    """A source file could not be opened or consumed."""


class OverflowStoreError(AgentError):
    """The on-disk overflow snapshot could not be read, written or removed."""


class BufferFullError(AgentError):
    """The buffer is at capacity and has nowhere to spill."""


class DeliveryError(AgentError):
    """A batch could not be delivered within the retry budget."""

    def __init__(self, message: str, attempts: int = 0, cause: Exception = None):
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class StartupError(AgentError):
    """The agent cannot enter the running state."""


class InvalidStateError(AgentError):
    """An operation was requested in a lifecycle state that forbids it."""
