from __future__ import annotations


ERROR_LOGIN_REQUIRED = "LOGIN_REQUIRED"
ERROR_PARSE_FAIL = "PARSE_FAIL"
ERROR_TIMEOUT = "TIMEOUT"
ERROR_HTTP = "HTTP_ERROR"
ERROR_UNKNOWN = "UNKNOWN"


class FetchError(Exception):
    def __init__(self, error_type: str, detail: str = ""):
        super().__init__(f"{error_type}: {detail}")
        self.error_type = error_type
        self.detail = detail


class AuthRequiredError(FetchError):
    """The page asked for a login instead of showing content."""

    def __init__(self, detail: str = "login required"):
        super().__init__(ERROR_LOGIN_REQUIRED, detail)


class AuthError(Exception):
    """A session could not be established."""


class SummarizationError(Exception):
    pass


class PersistenceError(Exception):
    """A state file could not be written."""


class DeliveryError(Exception):
    pass
