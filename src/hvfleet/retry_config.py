"""Configuration for retry logic.

Only idempotent operations are retried: directory API reads and
read-only hypervisor queries. Mutating hypervisor calls never are.

Design Philosophy:
- Sensible defaults: Works out of the box
- Environment-aware: Can be overridden via env vars
"""

import os
from dataclasses import dataclass


@dataclass
class RetryConfig:
    """Retry configuration settings."""

    # Directory API (Microsoft Graph) requests
    api_max_attempts: int = 3
    api_initial_delay: float = 1.0
    api_max_delay: float = 30.0

    # Read-only hypervisor queries
    hypervisor_query_max_attempts: int = 3
    hypervisor_query_initial_delay: float = 2.0
    hypervisor_query_max_delay: float = 10.0

    jitter_enabled: bool = True

    @classmethod
    def from_environment(cls) -> "RetryConfig":
        """Load retry configuration from environment variables.

        Environment variables (all optional):
            HVFLEET_RETRY_MAX_ATTEMPTS: Default max attempts (default: 3)
            HVFLEET_RETRY_INITIAL_DELAY: Default initial delay in seconds (default: 1.0)
            HVFLEET_RETRY_MAX_DELAY: Default max delay in seconds (default: 30.0)
            HVFLEET_RETRY_JITTER_ENABLED: Enable jitter (default: true)

        Returns:
            RetryConfig with values from environment or defaults
        """
        default_max_attempts = int(os.getenv("HVFLEET_RETRY_MAX_ATTEMPTS", "3"))
        default_initial_delay = float(os.getenv("HVFLEET_RETRY_INITIAL_DELAY", "1.0"))
        default_max_delay = float(os.getenv("HVFLEET_RETRY_MAX_DELAY", "30.0"))
        jitter_enabled = os.getenv("HVFLEET_RETRY_JITTER_ENABLED", "true").lower() == "true"

        return cls(
            api_max_attempts=default_max_attempts,
            api_initial_delay=default_initial_delay,
            api_max_delay=default_max_delay,
            hypervisor_query_max_attempts=default_max_attempts,
            hypervisor_query_initial_delay=float(
                os.getenv("HVFLEET_RETRY_HYPERVISOR_INITIAL_DELAY", "2.0")
            ),
            hypervisor_query_max_delay=float(
                os.getenv("HVFLEET_RETRY_HYPERVISOR_MAX_DELAY", "10.0")
            ),
            jitter_enabled=jitter_enabled,
        )


# Global configuration instance (lazily loaded)
_config: RetryConfig | None = None


def get_retry_config() -> RetryConfig:
    """Get global retry configuration (loaded from environment on first access)."""
    global _config
    if _config is None:
        _config = RetryConfig.from_environment()
    return _config


def reset_retry_config() -> None:
    """Reset global retry configuration.

    Forces reload from environment on next access.
    """
    global _config
    _config = None


__all__ = ["RetryConfig", "get_retry_config", "reset_retry_config"]
