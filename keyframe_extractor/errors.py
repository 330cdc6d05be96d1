"""Exception types raised by the key-frame extraction pipeline."""


class KeyframeError(Exception):
    """Base class for all keyframe-extractor errors."""


class InvalidInputError(KeyframeError, ValueError):
    """Input cannot be processed at all (bad dimensions, duration or options).

    Raised before any sampling begins.
    """


class SeekTimeoutError(KeyframeError):
    """A seek did not settle within the allotted time.

    Recoverable: ``frame`` holds the best-effort buffer that was available
    when the wait gave up (``None`` if nothing has been decoded yet).
    """

    def __init__(self, timestamp: float, frame=None, message: str = ""):
        self.timestamp = timestamp
        self.frame = frame
        super().__init__(message or f"Seek to {timestamp:.3f}s timed out")


class ExtractionAbortedError(KeyframeError):
    """Sampling stopped on an unexpected error.

    ``screenshots`` carries everything emitted before the failure.
    """

    def __init__(self, message: str, screenshots=None):
        super().__init__(message)
        self.screenshots = list(screenshots or [])
