from __future__ import annotations


class IdentifyError(RuntimeError):
    """Base class for failures of an external collaborator."""

    retryable = False


class EmbeddingFailure(IdentifyError):
    """The embedding provider was unreachable, timed out, or rejected the image.

    The scan is aborted without a decision or session and may be retried.
    """

    retryable = True


class IndexQueryFailure(IdentifyError):
    """A category index query failed; treated as zero hits for that category."""

    def __init__(self, category: str, message: str) -> None:
        super().__init__(f"{category}: {message}")
        self.category = category


class OCRFailure(IdentifyError):
    """The OCR/vision call failed or timed out."""


class SessionNotFound(KeyError):
    pass


class FeedbackAlreadyRecorded(ValueError):
    pass
