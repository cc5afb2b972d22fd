"""Exception taxonomy for promo_engine.

Validation problems are raised before any transform work starts. Transcode
failures are always fatal for a render. Review failures are caught by the
review loop and never abort a render.
"""

from __future__ import annotations


class PromoEngineError(Exception):
    """Base class for all promo_engine errors."""


class ValidationError(PromoEngineError):
    """Structurally invalid input: missing clip, wrong segment count, silent artist clip."""


class JobNotFound(PromoEngineError):
    pass


class ProbeError(PromoEngineError):
    """Media inspection failed or the file has no video stream."""


class DownloadError(PromoEngineError):
    """Remote media could not be fetched (bad URL, transport, auth, downloader exit)."""


class AnalysisError(PromoEngineError):
    """The vision service returned something the pipeline cannot use."""


class ReviewError(PromoEngineError):
    """Malformed transition review verdict."""


class TranscodeError(PromoEngineError):
    """The transcoding engine exited non-zero.

    ``tail`` holds the last lines of its diagnostic output.
    """

    def __init__(self, message: str, tail: str = "", returncode: int | None = None):
        super().__init__(message)
        self.tail = tail
        self.returncode = returncode


class TranscodeTimeout(TranscodeError):
    pass


class JobCancelled(PromoEngineError):
    """Cancellation was requested or an external step timed out."""


class VisionServiceError(PromoEngineError):
    """The vision service could not be reached or rejected the request."""
