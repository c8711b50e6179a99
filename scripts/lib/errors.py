"""
Funnel Hub exceptions.

Every error carries a machine-readable ``code``, a human ``message`` (shown
to dashboard users as-is) and ``details`` for logs. ``http_status`` is the
status the API answers with when the error escapes a route.

    FunnelHubError
    ├── APIError                 CRM proxy boundary (502)
    │   ├── APITimeoutError
    │   ├── APIRateLimitError
    │   ├── APIAuthError
    │   ├── CircuitOpenError     (503)
    │   └── CRMProxyError        proxy answered success=false
    └── DataError                local data / configuration (500)
        ├── ConfigError
        └── SchemaValidationError  proxy payload shape (502)
"""
from typing import Any, Dict, Optional


class FunnelHubError(Exception):
    code = "FUNNEL_HUB_ERROR"
    http_status = 500

    def __init__(self, message: str, code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.code = code or self.code
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": {k: v for k, v in self.details.items() if v is not None},
        }


# --- CRM boundary ---

class APIError(FunnelHubError):
    code = "API_ERROR"
    http_status = 502

    def __init__(self, message: str, code: str = None,
                 status_code: Optional[int] = None, url: str = None, **details):
        self.status_code = status_code
        self.url = url
        super().__init__(message, code, {"status_code": status_code, "url": url, **details})


class APITimeoutError(APIError):
    code = "API_TIMEOUT"

    def __init__(self, url: str, timeout: float):
        super().__init__(
            f"CRM proxy did not answer within {timeout}s (request timed out)",
            url=url, timeout=timeout,
        )


class APIRateLimitError(APIError):
    code = "API_RATE_LIMIT"

    def __init__(self, url: str, retry_after: Optional[int] = None):
        wait = f", retry after {retry_after}s" if retry_after else ""
        super().__init__(
            f"CRM proxy rate limit reached{wait}",
            status_code=429, url=url, retry_after=retry_after,
        )


class APIAuthError(APIError):
    code = "API_AUTH_FAILED"

    def __init__(self, url: str, status_code: int = 401):
        super().__init__(
            f"CRM proxy rejected the credentials (HTTP {status_code})",
            status_code=status_code, url=url,
        )


class CircuitOpenError(APIError):
    code = "CIRCUIT_OPEN"
    http_status = 503

    def __init__(self, service: str, failures: int, reset_time: float):
        super().__init__(
            f"{service} paused after {failures} consecutive failures; "
            f"retrying in {reset_time:.0f}s",
            service=service, failures=failures,
        )


class CRMProxyError(APIError):
    code = "CRM_PROXY_ERROR"

    def __init__(self, message: str, action: str = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, action=action)


# --- Local data ---

class DataError(FunnelHubError):
    code = "DATA_ERROR"


class ConfigError(DataError):
    code = "CONFIG_ERROR"

    def __init__(self, message: str, config_path: str = None):
        super().__init__(message, details={"config_path": config_path})


class SchemaValidationError(DataError):
    code = "SCHEMA_INVALID"
    http_status = 502

    def __init__(self, message: str, field: str = None):
        super().__init__(message, details={"field": field})
