"""Log sanitization module for preventing secret leakage.

Directory API errors and credential failures can echo bearer tokens or
client secrets back at us. Everything that reaches a log line or the
console from those paths goes through LogSanitizer first.

Design Philosophy:
- Security first: err on side of over-redaction
- Pattern-based: not brittle keyword matching
"""

import re
from re import Pattern


class LogSanitizer:
    """Sanitize sensitive data from logs and error messages.

    All methods are static and can be called without instantiation.
    """

    REDACTED = "[REDACTED]"

    # Order matters: more specific patterns should come first
    SECRET_PATTERNS: dict[str, Pattern] = {
        "client_secret_assignment": re.compile(
            r'(client[_-]?secret["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)',
            re.IGNORECASE,
        ),
        "client_secret_env": re.compile(
            r"(AZURE_CLIENT_SECRET)[\"']?\s*[:=]\s*[\"']?([^\s\"'&,\)]+)",
            re.IGNORECASE,
        ),
        "password": re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE),
        "authorization_bearer": re.compile(r"(Authorization:\s*Bearer\s+)([^\s]+)", re.IGNORECASE),
        "bearer_header_value": re.compile(r"(['\"]Bearer\s+)([^'\"\s]+)", re.IGNORECASE),
        "access_token": re.compile(
            r'(access[_-]?token["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)',
            re.IGNORECASE,
        ),
        # Token in general (but not "token" as a word)
        "token_assignment": re.compile(
            r'([^a-zA-Z]token["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE
        ),
    }

    @classmethod
    def sanitize(cls, message: str) -> str:
        """Sanitize message by redacting sensitive patterns.

        Examples:
            >>> LogSanitizer.sanitize("client_secret=abc123")
            'client_secret=[REDACTED]'
            >>> LogSanitizer.sanitize("Authorization: Bearer eyJ0eXAi")
            'Authorization: Bearer [REDACTED]'
        """
        if not isinstance(message, str):
            message = str(message)

        result = message
        for pattern in cls.SECRET_PATTERNS.values():
            result = pattern.sub(r"\1" + cls.REDACTED, result)

        return result

    @classmethod
    def sanitize_exception(cls, exc: BaseException) -> str:
        """Sanitize exception message."""
        return cls.sanitize(str(exc))

    @classmethod
    def create_safe_error_message(cls, error: BaseException, context: str = "") -> str:
        """Create error message with secrets sanitized.

        Examples:
            >>> err = ValueError("Auth failed with client_secret=abc123")
            >>> LogSanitizer.create_safe_error_message(err, "Authentication")
            'Authentication: Auth failed with client_secret=[REDACTED]'
        """
        sanitized_msg = cls.sanitize(str(error))
        if context:
            return f"{context}: {sanitized_msg}"
        return sanitized_msg


__all__ = ["LogSanitizer"]
