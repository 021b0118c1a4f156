from .config import ALLOWED_MODULES_TEXT


class StepvizError(Exception):
    pass


class UnsupportedImportError(StepvizError, ImportError):
    def __init__(self, name):
        self.module = name
        super().__init__(
            f"{name} not found or not supported - Only these modules can be imported: {ALLOWED_MODULES_TEXT}"
        )


class StepLimitExceeded(BaseException):
    """Raised from the trace hook; not an Exception so user code cannot catch it by accident."""

    def __init__(self, limit):
        self.limit = limit
        super().__init__(f"Program exceeded the step limit of {limit} steps")


class RunInProgressError(StepvizError):
    def __init__(self):
        super().__init__("Another run is already in progress")


class RuntimeNotReadyError(StepvizError):
    def __init__(self, reason=None):
        self.reason = reason
        super().__init__(f"Python runtime is not ready: {reason}" if reason else "Python runtime is not ready")


class AnalysisUnavailable(StepvizError):
    pass


class SupersededRequest(StepvizError):
    def __init__(self, key):
        self.key = key
        super().__init__(f"Request for {key!r} was superseded by a newer one")


class AnalysisNotConfigured(AnalysisUnavailable):
    def __init__(self):
        super().__init__("API key not configured")


class MalformedAnalysis(AnalysisUnavailable):
    """The model replied, but not with the JSON object that was asked for."""
