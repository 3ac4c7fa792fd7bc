# ============================================================================
# email_crypto_engine/exceptions.py
# ============================================================================
"""
Custom exceptions for the email crypto engine with detailed error context.
Password errors are recoverable user-facing conditions and are never logged.
"""

from typing import Dict, Any, Optional
import functools
import logging

logger = logging.getLogger(__name__)


class CryptoEngineError(Exception):
    """Base exception for all crypto engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_exception = original_exception

    def __str__(self) -> str:
        base_msg = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{base_msg} (Details: {details_str})"
        return base_msg


class KeyNotFoundError(CryptoEngineError):
    """Raised when no usable key exists for an address or operation."""
    pass


class PasswordError(CryptoEngineError):
    """Base class for recoverable passphrase conditions."""
    pass


class MissingPasswordError(PasswordError):
    """Raised when a passphrase is required but none is cached."""
    pass


class BadPasswordError(PasswordError):
    """Raised when the backend rejected the supplied passphrase."""
    pass


class MalformedInputError(CryptoEngineError):
    """Raised when armor or boundary markers cannot be located."""
    pass


class BackendFailureError(CryptoEngineError):
    """Raised when the crypto backend fails for any other reason."""
    pass


class ConfigurationError(CryptoEngineError):
    """Raised when configuration is invalid."""
    pass


def wrap_processing_error(original_error: Exception, context: str,
                          details: Optional[Dict[str, Any]] = None) -> CryptoEngineError:
    """
    Convert generic exceptions to engine errors.

    ValueError and TypeError become MalformedInputError, anything else
    BackendFailureError.

    Args:
        original_error: The original exception that occurred
        context: Context string describing where the error occurred
        details: Additional details about the error

    Returns:
        MalformedInputError or BackendFailureError carrying the original exception
    """
    enhanced_details = {
        "original_error_type": type(original_error).__name__,
        "context": context,
        **(details or {})
    }

    if isinstance(original_error, (ValueError, TypeError)):
        return MalformedInputError(
            f"Invalid input in {context}: {original_error}",
            enhanced_details,
            original_error
        )
    return BackendFailureError(
        f"Backend failure in {context}: {original_error}",
        enhanced_details,
        original_error
    )


def handle_processing_errors(context: str):
    """
    Decorator for consistent error handling across backend methods.

    Usage:
        @handle_processing_errors("gnupg sign")
        def sign(self, body, key, mode):
            # Implementation here
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except CryptoEngineError:
                raise
            except Exception as e:
                wrapped_error = wrap_processing_error(e, context, {"function": func.__name__})
                logger.debug(f"Wrapped error in {context}: {wrapped_error}", exc_info=True)
                raise wrapped_error from e
        return wrapper
    return decorator


def raise_error(error: CryptoEngineError, abort: bool = False) -> None:
    """
    Log a relevant error and optionally abort the current request.

    Password conditions are expected and are neither logged nor aborted on.
    """
    if isinstance(error, PasswordError):
        return

    logger.error(f"Enigma engine: {error}")

    if abort:
        raise error


def raise_key_not_found(address: Optional[str] = None):
    """Raise KeyNotFoundError, naming the address when known."""
    details = {"missing": address} if address else {}
    raise KeyNotFoundError(
        f"No usable key found for {address}" if address else "No usable key found",
        details
    )
