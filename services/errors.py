from __future__ import annotations


class AnalyzerError(Exception):
    pass


class CapabilityInitializationError(AnalyzerError):
    """An embedding or sentiment model could not be loaded. Fatal for the run."""

    def __init__(self, capability: str, model_name: str, message: str | None = None) -> None:
        self.capability = capability
        self.model_name = model_name
        super().__init__(message or f"Failed to load {capability} model '{model_name}'")


class PerItemAnalysisError(AnalyzerError):
    def __init__(self, index: int, text: str, cause: BaseException) -> None:
        self.index = index
        self.text = text
        self.cause = cause
        super().__init__(f"Error analyzing text {index}: {cause.__class__.__name__}: {cause}")


class RemoteServiceError(AnalyzerError):
    reason = "remote_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(RemoteServiceError):
    reason = "rate_limit"


class QuotaExhaustedError(RemoteServiceError):
    reason = "quota_exhausted"


class RemoteTimeoutError(RemoteServiceError, TimeoutError):
    reason = "timeout"


class MalformedResponseError(RemoteServiceError):
    reason = "malformed_response"


class LowSuccessRateWarning(UserWarning):
    pass
