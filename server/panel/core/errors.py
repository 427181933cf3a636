from typing import Any, Optional


class PanelError(Exception):
    """Base error; rendered by the API as ``{"error": message, "code": code}``."""

    code = "PANEL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class TargetUnreachable(PanelError):
    """Host cannot accept remote commands (not registered, not running, ...)."""

    code = "TARGET_UNREACHABLE"
    status_code = 409


class InvalidParameters(PanelError):
    code = "INVALID_PARAMETERS"
    status_code = 400


class CommandNotFound(PanelError):
    code = "COMMAND_NOT_FOUND"
    status_code = 404


class HostUnreachable(PanelError):
    """The status probe itself could not be delivered."""

    code = "HOST_UNREACHABLE"
    status_code = 503


class FetchFailed(PanelError):
    code = "FETCH_FAILED"
    status_code = 502

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class AggregationUnavailable(PanelError):
    code = "DATA_UNAVAILABLE"
    status_code = 502


class AnalyticsError(PanelError):
    """Classified outcome of an analytics or metrics read that produced no data."""

    def __init__(self, code: str, status_code: int, message: str, **extra: Any):
        super().__init__(message, code=code, status_code=status_code)
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body.update(self.extra)
        return body
