from typing import Any, Dict


class PushError(Exception):
    """Base exception for audience resolution and queue management errors."""

    def __init__(self, message: str, error_code: str = "PUSH_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def serialize(self) -> Dict[str, Any]:
        """Payload stored in a message's result.error field"""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.error_code,
        }


class ConfigurationError(PushError):
    """Referenced app is missing or a message cannot be mapped to platforms."""

    def __init__(self, message: str, error_code: str = "CONFIG_ERROR"):
        super().__init__(message, error_code)


class UpstreamQueryError(PushError):
    """Behavioral query engine rejected a query with a non-exception error."""

    def __init__(self, message: str, error_code: str = "UPSTREAM_QUERY_ERROR"):
        super().__init__(message, error_code)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""

    def __init__(self, message: str, error_code: str = "DB_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
