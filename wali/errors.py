"""Error taxonomy for the knowledge base core.

Every error raised by the RAG pipeline derives from ``WaliError`` so callers
at the command boundary can turn it into a single user-facing message.
"""
from typing import Any, Dict, Optional


class WaliError(Exception):
    """Base class for all knowledge base errors.

    Pipelines attach diagnostic context (stage, batch number) while the
    error propagates; the context is rendered as part of ``str(err)``.
    """

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def add_context(self, **context: Any) -> "WaliError":
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    @property
    def stage(self) -> Optional[str]:
        return self.context.get("stage")

    @property
    def batch(self) -> Optional[int]:
        return self.context.get("batch")

    def __str__(self) -> str:
        prefix = []
        if "stage" in self.context:
            prefix.append(str(self.context["stage"]))
        if "batch" in self.context:
            if "total_batches" in self.context:
                prefix.append(f"batch {self.context['batch']}/{self.context['total_batches']}")
            else:
                prefix.append(f"batch {self.context['batch']}")
        if prefix:
            return f"[{', '.join(prefix)}] {self.message}"
        return self.message


class NotConfiguredError(WaliError):
    """No API key has been set, so no embedding/generation backend exists."""

    def __init__(self, message: str = "API key is not configured", **context: Any):
        super().__init__(message, **context)


class ConfigError(WaliError, ValueError):
    """Invalid chunking or retrieval configuration."""


class TransportError(WaliError):
    """Network-level failure, including timeouts."""


class ApiError(WaliError):
    """The remote service answered with a non-2xx status."""

    def __init__(self, status: int, body: str, message: str = "", **context: Any):
        self.status = status
        self.body = body
        super().__init__(message or f"API request failed: {status} - {body}", **context)


class FormatError(WaliError):
    """The response body could not be parsed into the expected shape."""


class EmptyResultError(WaliError):
    """An expected embedding vector is missing or has zero length."""


class EmptyAnswerError(WaliError):
    """The generation response carried no usable text."""


class StorageError(WaliError):
    """Durable store I/O or transaction failure."""


class DocumentNotFoundError(WaliError):
    """A source file or stored document does not exist."""


class UnsupportedFileError(WaliError):
    """A source file yields no extractable text."""


class DimensionMismatchError(WaliError, ValueError):
    """A vector does not match the dimension of the index it is added to."""
