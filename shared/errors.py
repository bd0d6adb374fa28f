from typing import Any, Optional


class ServiceError(Exception):
    """Business-rule failure carrying the HTTP status the handler should answer with."""

    def __init__(self, message: str, status_code: int = 400, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.code:
            payload["code"] = self.code
        if self.details is not None:
            payload["details"] = self.details
        return payload
