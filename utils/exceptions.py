# app/utils/exceptions.py
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, status

# ==================== DOMAIN ERRORS ====================

class InvalidImageError(ValueError):
    """Image payload is empty, not a string or cannot be base64-decoded"""


class RemoteErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    INVALID_RESPONSE = "invalid_response"


class RemoteCallError(Exception):
    """
    Failure of a call to the verification provider.

    `kind` tells transport failures (network, timeout) apart from HTTP status
    failures; `payload` keeps the parsed response body when there was one.
    """

    def __init__(
        self,
        message: str,
        kind: RemoteErrorKind = RemoteErrorKind.HTTP_STATUS,
        status_code: Optional[int] = None,
        payload: Any = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.payload = payload
        self.operation = operation

    @property
    def retryable(self) -> bool:
        if self.kind == RemoteErrorKind.INVALID_RESPONSE:
            return False
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    def __repr__(self) -> str:
        return (
            f"RemoteCallError(kind={self.kind.value!r}, status_code={self.status_code!r}, "
            f"operation={self.operation!r}, message={self.message!r})"
        )


class UnhandledRunError(Exception):
    """Any unexpected exception caught at the top of a verification run"""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    @classmethod
    def from_exception(cls, error: BaseException) -> "UnhandledRunError":
        if isinstance(error, cls):
            return error
        message = str(error) or error.__class__.__name__
        return cls(
            message,
            status_code=getattr(error, "status_code", None),
            payload=getattr(error, "payload", None),
        )

# ==================== API ERRORS ====================

class VerificationException(HTTPException):
    def __init__(self, detail: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(status_code=status_code, detail=detail)

class InvalidAPIKeyException(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )

class RecordNotFoundException(HTTPException):
    def __init__(self, detail: str = "Verification record not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
