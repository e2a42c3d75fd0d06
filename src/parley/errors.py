"""
Parley - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Parley agent. Each error has a unique code for logging and debugging.

Transport-facing errors are split by what the caller should do next:
TransportUnavailable is retryable, AuthenticationRejected and
InvalidMutation are not, StreamUnavailable needs an explicit restart.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Parley error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"

    # Transport Errors (E200-E299)
    E200_TRANSPORT_UNAVAILABLE = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_OPERATION_TIMEOUT = "E202"
    E203_RATE_LIMITED = "E203"
    E210_STREAM_UNAVAILABLE = "E210"

    # Identity Errors (E300-E399)
    E300_AUTHENTICATION_REJECTED = "E300"
    E301_IDENTITY_NOT_FOUND = "E301"
    E302_IDENTITY_ALREADY_EXISTS = "E302"
    E303_IDENTITY_LOAD_FAILED = "E303"

    # Persistence Errors (E400-E499)
    E400_PERSISTENCE_FAILURE = "E400"
    E401_STORE_WRITE_FAILED = "E401"
    E402_STORE_READ_FAILED = "E402"

    # Group Errors (E500-E599)
    E500_INVALID_MUTATION = "E500"
    E501_GROUP_NOT_FOUND = "E501"
    E502_GROUP_NOT_ACTIVE = "E502"
    E503_MEMBER_NOT_FOUND = "E503"
    E504_INSUFFICIENT_ROLE = "E504"
    E505_LAST_SUPER_ADMIN = "E505"
    E506_NO_PRIVILEGED_MEMBER = "E506"
    E507_GROUP_FULL = "E507"
    E508_INVALID_TRANSITION = "E508"
    E509_REMOTE_REJECTED = "E509"
    E510_INVALID_METADATA = "E510"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class ParleyError(Exception):
    """Base exception class for all Parley errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error context (conversation_id, operation, cause)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    @property
    def conversation_id(self) -> Optional[str]:
        return self.details.get("conversation_id")

    @property
    def operation(self) -> Optional[str]:
        return self.details.get("operation")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class TransportUnavailable(ParleyError):
    """Network or connectivity failure. Retryable with backoff."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_TRANSPORT_UNAVAILABLE,
        message: str = "Transport unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthenticationRejected(ParleyError):
    """Identity or signature rejected by the network. Fatal, never retried."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_AUTHENTICATION_REJECTED,
        message: str = "Authentication rejected",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class InvalidMutation(ParleyError):
    """Group-state transition rejected locally or by the network.

    The violated rule is available as ``rule`` so callers can act on it
    without parsing the message.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_INVALID_MUTATION,
        message: str = "Invalid group mutation",
        details: Optional[Dict[str, Any]] = None,
        rule: Optional[str] = None,
    ):
        details = dict(details or {})
        if rule:
            details.setdefault("rule", rule)
        super().__init__(code, message, details)

    @property
    def rule(self) -> Optional[str]:
        return self.details.get("rule")


class StreamUnavailable(ParleyError):
    """Terminal stream state after exhausting reconnection attempts."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E210_STREAM_UNAVAILABLE,
        message: str = "Message stream unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class PersistenceFailure(ParleyError):
    """Local replica store write failure."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_PERSISTENCE_FAILURE,
        message: str = "Local replica write failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(ParleyError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


def is_retryable(error: BaseException) -> bool:
    """Return True if retrying the failed operation may change the outcome."""
    return isinstance(error, TransportUnavailable)


def is_fatal(error: BaseException) -> bool:
    """Return True for errors the agent treats as process-fatal by default."""
    return isinstance(error, (AuthenticationRejected, StreamUnavailable))
