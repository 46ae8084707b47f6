"""Error types shared by the batch processing services."""


class BatchError(Exception):
    """Base class for batch processing failures."""


class ValidationError(BatchError):
    """Raised when a job submission is malformed. Fatal to the whole job."""


class UnsupportedOperation(ValidationError):
    """Raised when an operation name is not one of the known operations."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Unknown operation: {operation}")
        self.operation = operation


class ProcessingError(BatchError):
    """Raised when a single file fails to transform. The job carries on."""


class ChannelClosed(BatchError):
    """Raised when the consumer of a progress channel has gone away."""
