"""A central module for all custom exceptions used in the browser-task project."""


class BrowserTaskError(Exception):
    """Base exception for all task-related errors for easier top-level catching."""
    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TaskConfigurationError(BrowserTaskError):
    """Raised when the task's settings are invalid or inconsistent."""
    pass


class InvalidRequestError(BrowserTaskError):
    """Raised when a required field is missing, before any session is touched."""
    status_code = 400


class PlannerError(BrowserTaskError):
    """Raised when the planning oracle fails or returns malformed output."""
    status_code = 502


class ExecutionFailure(BrowserTaskError):
    """Raised when a dispatched action fails against the remote session."""
    status_code = 500

    def __init__(self, message: str, step_number: int | None = None):
        self.step_number = step_number
        super().__init__(message)


class ProviderActionError(BrowserTaskError):
    """Raised by a session provider when a primitive action is rejected or fails on the page."""
    pass


class SessionUnavailableError(BrowserTaskError):
    """Raised when create/destroy/dispatch against the provider fails at the transport level."""
    status_code = 502


class AlreadyRunningError(BrowserTaskError):
    """Raised when `start` is re-entered while a session exists or is being created."""
    status_code = 409


class LockTimeoutError(BrowserTaskError):
    """Raised when acquiring a state lock times out, indicating a potential deadlock."""
    pass
