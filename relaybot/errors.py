"""Exception types shared across relaybot."""


class RelayError(Exception):
    """Base class for relaybot errors."""


class ConfigError(RelayError):
    """Configuration is missing or invalid."""


class UpstreamFailure(RelayError):
    """The agent engine or transcriber rejected a request."""


class TurnAborted(UpstreamFailure):
    """A turn was cancelled while the agent engine was running."""

    def __init__(self, session_id: str):
        super().__init__(f"Agent run aborted for session {session_id}")
        self.session_id = session_id


class DeliveryError(RelayError):
    """A reply could not be delivered to a channel."""


class CommandError(RelayError):
    """Invalid options passed to a direct agent command."""
