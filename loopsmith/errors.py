"""Exception types shared across Loopsmith.

Loopsmith Principle: Errors Become Messages
Almost nothing here reaches the user as a traceback. The scheduler, the turn
engine and the shell session catch these and turn them into tool results or
assistant messages.
"""


class LoopsmithError(Exception):
    """Base class for all Loopsmith errors."""

    pass


class AbortError(LoopsmithError):
    """Raised when an operation observes a fired abort signal."""

    pass


class ShellError(LoopsmithError):
    """Raised when the persistent shell cannot accept a command."""

    pass


class ToolInputError(LoopsmithError):
    """Raised when a tool input fails structural validation."""

    pass


class ConfigParseError(LoopsmithError):
    """Raised when a config file exists but cannot be parsed."""

    def __init__(self, message, file_path, default_config=None):
        super().__init__(message)
        self.file_path = str(file_path)
        self.default_config = default_config
