"""
Exception types raised by the agent runtime.
"""


class AgentRuntimeError(Exception):
    """Base class for runtime errors."""


class SessionNotFoundError(AgentRuntimeError):
    """The requested session does not exist in the store."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class ProviderMismatchError(AgentRuntimeError):
    """A session's locked provider differs from the selected model's provider."""

    def __init__(self, session_provider: str, model_provider: str):
        self.session_provider = session_provider
        self.model_provider = model_provider
        super().__init__(
            f"Session provider ({session_provider}) does not match selected model provider "
            f"({model_provider}). Start a new session for a different provider."
        )


class RunAlreadyActiveError(AgentRuntimeError):
    """A second run was requested while one is still running."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has an active run.")


class EmptyResponseError(AgentRuntimeError):
    """The provider returned no output items."""


class ResponseFailedError(AgentRuntimeError):
    """An asynchronous response finished in a failure state."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ResponsePollTimeoutError(AgentRuntimeError):
    """Polling an asynchronous response exceeded its time limit."""


class ToolCancelledError(AgentRuntimeError):
    """Raised when a tool execution is cancelled via its CancelToken."""

    def __init__(self, message: str = "Tool execution was cancelled"):
        super().__init__(message)
