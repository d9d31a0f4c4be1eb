"""
FieldOps error hierarchy.

All data-layer exceptions inherit from PipelineError, which provides:
- message: technical detail (for logs)
- user_message: safe string (for notifications, no PII)
- recoverable: whether the caller should retry
"""


class PipelineError(Exception):
    """Base exception for all FieldOps errors."""

    def __init__(self, message: str, user_message: str, recoverable: bool = True):
        self.message = message
        self.user_message = user_message
        self.recoverable = recoverable
        super().__init__(message)


class ValidationError(PipelineError):
    """Caller supplied input the operation cannot use."""

    def __init__(self, message: str):
        super().__init__(message=message, user_message=message, recoverable=False)


class WorkflowError(PipelineError):
    """Plan workflow transition not allowed from the current state."""

    def __init__(self, message: str, current_state: str | None = None):
        self.current_state = current_state
        super().__init__(message=message, user_message=message, recoverable=False)
