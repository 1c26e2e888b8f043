"""
Custom exceptions for the CGM link.

This module provides structured error handling with clear error codes
so that collaborators can render a failure without parsing log strings.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Standardized error codes for the application."""

    # Protocol Errors (1xxx)
    PROTOCOL_MALFORMED_INPUT = "PROTOCOL_1001"
    PROTOCOL_VIOLATION = "PROTOCOL_1002"
    PROTOCOL_AUTH_FAILED = "PROTOCOL_1003"

    # Crypto Errors (2xxx)
    CRYPTO_FAILURE = "CRYPTO_2001"

    # Transport Errors (3xxx)
    TRANSPORT_FAILURE = "TRANSPORT_3001"

    # Session Errors (4xxx)
    SESSION_RECONNECT_EXHAUSTED = "SESSION_4001"
    SESSION_NOT_STARTED = "SESSION_4002"

    # Configuration Errors (5xxx)
    CONFIG_INVALID = "CONFIG_5001"

    # Upload Errors (6xxx)
    UPLOAD_FAILED = "UPLOAD_6001"


class CgmLinkError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details
        self.original_error = original_error
        super().__init__(self.full_message)

    @property
    def full_message(self) -> str:
        """Returns the complete error message with code and details."""
        parts = [f"[{self.error_code.value}] {self.message}"]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.original_error:
            parts.append(f"Caused by: {type(self.original_error).__name__}: {self.original_error}")
        return " | ".join(parts)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class MalformedInputError(CgmLinkError):
    """Raised when a buffer is too short or a field is out of range."""

    def __init__(
        self,
        message: str = "Malformed sensor data",
        details: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.PROTOCOL_MALFORMED_INPUT,
            details=details,
        )


class ProtocolViolationError(CgmLinkError):
    """Raised when a message arrives that the current state does not expect."""

    def __init__(
        self,
        message: str = "Unexpected protocol message",
        details: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.PROTOCOL_VIOLATION,
            details=details,
        )


class AuthenticationError(CgmLinkError):
    """Raised when the sensor handshake cannot be completed."""

    def __init__(
        self,
        message: str = "Failed to authenticate with sensor",
        details: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.PROTOCOL_AUTH_FAILED,
            details=details,
            original_error=original_error,
        )


class CryptoFailureError(CgmLinkError):
    """Raised when cipher setup or decryption fails."""

    def __init__(
        self,
        message: str = "Decryption failed",
        details: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.CRYPTO_FAILURE,
            details=details,
            original_error=original_error,
        )


class TransportFailureError(CgmLinkError):
    """Raised when the transport fails to connect, write or disconnect."""

    def __init__(
        self,
        message: str = "Transport operation failed",
        details: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.TRANSPORT_FAILURE,
            details=details,
            original_error=original_error,
        )


class ReconnectExhaustedError(CgmLinkError):
    """Raised when the reconnect attempt cap has been reached."""

    def __init__(
        self,
        attempts: int,
        message: str = "Connection failed after maximum reconnect attempts",
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.SESSION_RECONNECT_EXHAUSTED,
            details=f"Gave up after {attempts} attempts",
        )
        self.attempts = attempts


class SessionNotStartedError(CgmLinkError):
    """Raised when session data is requested before a sensor was connected."""

    def __init__(
        self,
        message: str = "No sensor session available",
        details: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.SESSION_NOT_STARTED,
            details=details,
        )


class ConfigurationError(CgmLinkError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        details: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIG_INVALID,
            details=details,
        )


class UploadError(CgmLinkError):
    """Raised when uploading readings to Nightscout fails."""

    def __init__(
        self,
        url: str,
        message: str = "Failed to upload glucose readings",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.UPLOAD_FAILED,
            details=f"Nightscout URL: {url}",
            original_error=original_error,
        )
