"""Global constants for Rebound.

Centralizes magic numbers used throughout the codebase,
making them discoverable, consistent, and easy to modify.
"""

# =============================================================================
# Text Truncation Limits (characters)
# =============================================================================

ERROR_SUMMARY_MAX_CHARS = 1000
"""Maximum characters of error text persisted in an attempt record."""

LOG_ERROR_PREVIEW_CHARS = 200
"""Maximum characters of error text included in log entries."""

LOG_HOOK_PREVIEW_CHARS = 100
"""Maximum characters of error text logged by remediators."""

# =============================================================================
# Default Retry Policy
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
"""Attempts allowed for a category without its own budget."""

DEFAULT_BASE_DELAY_MS = 1000
"""Initial backoff delay (1 second)."""

DEFAULT_MAX_DELAY_MS = 30_000
"""Backoff cap (30 seconds)."""

DEFAULT_BACKOFF_MULTIPLIER = 2.0
"""Growth factor of the delay per prior attempt."""

DEFAULT_JITTER_FACTOR = 0.1
"""Total jitter spread as a fraction of the delay (+/- 5%)."""

# =============================================================================
# Side Channel Timeouts
# =============================================================================

SIDE_CHANNEL_TIMEOUT_SECONDS = 2.0
"""Upper bound on a single recorder write or event publish."""

REMEDIATION_TIMEOUT_SECONDS = 5.0
"""Upper bound on an asynchronous remediator call before it counts as a veto."""

# =============================================================================
# Reporting
# =============================================================================

STATS_DEFAULT_WINDOW_HOURS = 24
"""Default look-back window for retry statistics."""

SECONDS_PER_HOUR = 3600
"""Seconds in one hour."""
