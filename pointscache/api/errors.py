from dataclasses import dataclass
from typing import ClassVar


@dataclass
class ApiError(Exception):
    message: str
    status_code: int | None = None
    method: str | None = None
    url: str | None = None
    request_id: str | None = None

    retryable: ClassVar[bool] = False
    "whether the same request may succeed if sent again later"

    def __str__(self) -> str:
        bits = [self.message]
        if self.status_code is not None:
            bits.append(f"status={self.status_code}")
        if self.method and self.url:
            bits.append(f"request={self.method} {self.url}")
        elif self.url:
            bits.append(f"url={self.url}")
        if self.request_id:
            bits.append(f"request_id={self.request_id}")
        return " ".join(bits)


class ApiBadRequest(ApiError):
    pass


class ApiPermissionDenied(ApiError):
    pass


class ApiConflict(ApiError):
    pass


@dataclass
class ApiRateLimited(ApiError):
    retry_after_s: float | None = None

    retryable = True


class ApiUnavailable(ApiError):
    retryable = True


_ERRORS_BY_STATUS: dict[int, type[ApiError]] = {
    400: ApiBadRequest,
    401: ApiPermissionDenied,
    403: ApiPermissionDenied,
    409: ApiConflict,
    429: ApiRateLimited,
}


def error_for_status(status_code: int) -> type[ApiError]:
    """Maps an HTTP error status to its exception class; 5xx are all ApiUnavailable."""
    if status_code >= 500:
        return ApiUnavailable
    return _ERRORS_BY_STATUS.get(status_code, ApiError)
