"""
Standardized exception hierarchy for the loyalty engine
Provides rich context, consistent logging, and user-friendly error messages
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4
import logging

logger = logging.getLogger(__name__)


class LoyaltyEngineError(Exception):
    """
    Base exception for all loyalty engine errors

    Provides:
    - Automatic timestamping
    - Request ID for tracing
    - User-friendly messages
    - Structured context
    - Automatic logging

    Example:
        raise LoyaltyEngineError(
            message="Failed to persist redemption",
            subject_id="barber-17",
            operation="confirm_redemption",
            context={"achievement_id": "first-100-visits"}
        )
    """

    log_level = logging.ERROR

    def __init__(
        self,
        message: str,
        subject_id: Optional[str] = None,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.subject_id = subject_id
        self.request_id = request_id or str(uuid4())
        self.operation = operation
        self.context = context or {}
        self.cause = cause
        self.user_message = user_message or "An error occurred. Please try again."
        self.timestamp = datetime.now(timezone.utc)

        # Auto-log on creation
        self._log_error()

    def _log_error(self) -> None:
        """Log error with full context"""
        log_data = {
            "error_type": self.__class__.__name__,
            "error_message": self.message,  # Avoid conflict with logging's 'message' field
            "request_id": self.request_id,
            "subject_id": self.subject_id,
            "operation": self.operation,
            "error_context": self.context,
            "timestamp": self.timestamp.isoformat()
        }

        if self.cause:
            log_data["cause"] = str(self.cause)
            logger.log(self.log_level, f"{self.__class__.__name__}: {self.message}", extra=log_data, exc_info=self.cause)
        else:
            logger.log(self.log_level, f"{self.__class__.__name__}: {self.message}", extra=log_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for API responses"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat()
        }


# ==========================================
# Validation Errors (Caller Input)
# ==========================================

class ValidationError(LoyaltyEngineError):
    """
    Raised when caller input fails validation

    Examples:
    - Unknown leaderboard metric
    - Empty actor identity on a redemption
    """

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=message,
            user_message=f"Invalid {field}: {message}" if field else message,
            context={"field": field, "value": value},
            **kwargs
        )


# ==========================================
# Upstream Data Errors
# ==========================================

class DataUnavailable(LoyaltyEngineError):
    """
    Visit ledger or catalog read failed

    Recovered locally by omitting the affected subject from batch results.
    """

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        **kwargs
    ):
        self.source = source
        kwargs.setdefault("context", {"source": source})
        super().__init__(
            message=message,
            user_message=f"{(source or 'upstream').capitalize()} data is temporarily unavailable. Please try again later.",
            **kwargs
        )


# ==========================================
# Redemption State Machine Errors
# ==========================================

class RedemptionError(LoyaltyEngineError):
    """Base class for redemption transition failures"""

    log_level = logging.WARNING


class InvalidStateError(RedemptionError):
    """A transition was requested from a state that does not permit it"""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        allowed_states: Optional[list[str]] = None,
        achievement_id: Optional[str] = None,
        **kwargs
    ):
        self.current_state = current_state
        self.allowed_states = allowed_states or []
        self.achievement_id = achievement_id
        super().__init__(
            message=message,
            user_message="This reward is not in a state that allows that action. Refresh and try again.",
            context={
                "current_state": current_state,
                "allowed_states": self.allowed_states,
                "achievement_id": achievement_id,
            },
            **kwargs
        )


class CompletionLimitExceeded(RedemptionError):
    """Repeatable achievement cap reached"""

    def __init__(
        self,
        message: str,
        completion_count: Optional[int] = None,
        max_completions: Optional[int] = None,
        achievement_id: Optional[str] = None,
        **kwargs
    ):
        self.completion_count = completion_count
        self.max_completions = max_completions
        self.achievement_id = achievement_id
        super().__init__(
            message=message,
            user_message="This reward has already been redeemed the maximum number of times.",
            context={
                "completion_count": completion_count,
                "max_completions": max_completions,
                "achievement_id": achievement_id,
            },
            **kwargs
        )


# ==========================================
# Database Errors
# ==========================================

class DatabaseError(LoyaltyEngineError):
    """
    Base class for database-related errors
    """
    pass


class QueryError(DatabaseError):
    """Database query execution failed"""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        **kwargs
    ):
        self.query = query
        super().__init__(
            message=message,
            user_message="We encountered an issue saving your data. Please try again.",
            context={"query": query},
            **kwargs
        )


class RecordNotFoundError(DatabaseError):
    """Requested record does not exist"""

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs
    ):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(
            message=message,
            user_message=f"{record_type or 'Record'} not found.",
            context={"record_type": record_type, "record_id": record_id},
            **kwargs
        )


class StaleRecordError(DatabaseError):
    """A redemption record changed between read and write"""

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        expected_version: Optional[int] = None,
        **kwargs
    ):
        self.expected_version = expected_version
        super().__init__(
            message=message,
            user_message="This reward was updated by someone else. Refresh and try again.",
            context={"expected_version": expected_version},
            **kwargs
        )


# ==========================================
# Configuration Errors
# ==========================================

class ConfigurationError(LoyaltyEngineError):
    """Catalog definition or system configuration is invalid"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            user_message="The system is not properly configured. Please contact support.",
            context={"config_key": config_key},
            **kwargs
        )


# ==========================================
# Helper Functions
# ==========================================

def wrap_external_exception(
    error: Exception,
    operation: str,
    subject_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    source: str = "ledger"
) -> LoyaltyEngineError:
    """
    Wrap external exceptions (psycopg, httpx, etc.) into our exception hierarchy

    Args:
        error: Original exception
        operation: What operation was being performed
        subject_id: Subject ID if applicable
        context: Additional context
        source: Upstream name for HTTP failures (ledger or catalog)

    Returns:
        Appropriate LoyaltyEngineError subclass

    Example:
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise wrap_external_exception(e, operation="get_history", subject_id="barber-1")
    """
    import httpx
    import psycopg

    if isinstance(error, LoyaltyEngineError):
        return error

    # Database errors
    if isinstance(error, psycopg.Error):
        return QueryError(
            message=f"Database query failed: {str(error)}",
            subject_id=subject_id,
            operation=operation,
            cause=error
        )

    # HTTP errors (upstream ledger / catalog)
    if isinstance(error, httpx.TimeoutException):
        return DataUnavailable(
            message=f"Upstream request timed out: {str(error)}",
            source=source,
            subject_id=subject_id,
            operation=operation,
            context=context,
            cause=error
        )
    if isinstance(error, httpx.HTTPStatusError):
        return DataUnavailable(
            message=f"Upstream returned error: {error.response.status_code}",
            source=source,
            subject_id=subject_id,
            operation=operation,
            context=context,
            cause=error
        )
    if isinstance(error, httpx.HTTPError):
        return DataUnavailable(
            message=f"Upstream request failed: {str(error)}",
            source=source,
            subject_id=subject_id,
            operation=operation,
            context=context,
            cause=error
        )

    # Generic fallback
    return LoyaltyEngineError(
        message=f"{operation} failed: {str(error)}",
        subject_id=subject_id,
        operation=operation,
        context=context,
        cause=error
    )
