"""Constants for reconciliation and conflict handling."""

# Local and remote lastModified values further apart than this are a conflict.
CONFLICT_THRESHOLD_SECONDS = 60

# Conflict ids are "{provider_id}-{url}".
CONFLICT_ID_TEMPLATE = "{provider_id}-{url}"

# Apply phases run in this order on every pass.
APPLY_PHASES = ("delete", "update", "create")
