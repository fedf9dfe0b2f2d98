"""
Feature Flags Configuration

Centralized feature flag management for the progression engine.
All feature flags are loaded from environment variables.
"""
import os


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on bad input."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class FeatureFlags:
    """
    Feature flags for the progression engine.

    To add a new feature flag:
    1. Add it here as a class property
    2. Load it from environment variable
    3. Use it in your code
    """

    # Evidence submitted by an admin is approved on creation
    FEATURE_AUTO_APPROVE_ADMIN_EVIDENCE: bool = get_bool_env('FEATURE_AUTO_APPROVE_ADMIN_EVIDENCE', True)

    # A stage with no requirements needs at least one approved item instead of being vacuously complete
    FEATURE_REQUIRE_EVIDENCE_FOR_EMPTY_STAGES: bool = get_bool_env('FEATURE_REQUIRE_EVIDENCE_FOR_EMPTY_STAGES', False)

    # Publish outbox signals right after commit (off: left for the redeliver command)
    FEATURE_SIGNAL_DISPATCH: bool = get_bool_env('FEATURE_SIGNAL_DISPATCH', True)

    # Retry limits
    OVERRIDE_TOGGLE_MAX_ATTEMPTS: int = get_int_env('OVERRIDE_TOGGLE_MAX_ATTEMPTS', 3)
    SIGNAL_DISPATCH_MAX_ATTEMPTS: int = get_int_env('SIGNAL_DISPATCH_MAX_ATTEMPTS', 10)

    @classmethod
    def is_enabled(cls, flag_name: str) -> bool:
        """Check if a feature flag is enabled by name."""
        return getattr(cls, flag_name, False)

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags as a dictionary."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if not key.startswith('_') and isinstance(value, bool)
        }


# Singleton instance for easy importing
feature_flags = FeatureFlags()
