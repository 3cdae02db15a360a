"""
Typed errors for the metadata pipeline.

Every per-image failure carries a stable ``kind`` tag which is what ends up in
a batch's ``failed_images[].error_reason``. Exporter errors use the same base
class so the HTTP layer can render them uniformly.
"""
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Root pipeline exception (never raised directly)"""

    kind = "PipelineError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_code': self.kind,
            'error': self.message,
            'details': self.details,
        }

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class DecodeError(PipelineError):
    """Input is not a readable image"""
    kind = "DecodeError"


class StorageIOError(PipelineError):
    """Filesystem failure while resizing, storing or cleaning up"""
    kind = "IOError"


class GenerationError(PipelineError):
    """The AI backend rejected the request or returned unusable output"""
    kind = "GenerationError"


class GenerationTimeout(PipelineError):
    """The AI backend did not answer within the request timeout"""
    kind = "TimeoutError"


class InsufficientTokens(PipelineError):
    kind = "InsufficientTokens"


class BatchNotFound(PipelineError):
    kind = "BatchNotFound"


class NoSuccessfulImages(PipelineError):
    kind = "NoSuccessfulImages"


# Stable tags recorded per image
ERROR_KINDS = (
    DecodeError.kind,
    StorageIOError.kind,
    GenerationError.kind,
    GenerationTimeout.kind,
    InsufficientTokens.kind,
)
