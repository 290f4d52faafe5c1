"""Engine-wide constants."""

SYSTEM_USER = "system"

# Step types the engine completes itself after activation
AUTO_COMPLETING_STEP_TYPES = frozenset({"action", "condition", "notification", "parallel"})

DEFAULT_AUTO_COMPLETE_DELAY = 1.0
DEFAULT_TIMEZONE = "UTC"
