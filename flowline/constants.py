"""Shared defaults for the flowline engine."""

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_SUCCESS_STATUS_CODES = [200, 201, 202, 204]
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_SECRETS_ENV_PREFIX = "FLOWLINE_SECRET_"
DEFAULT_ERROR_NAMESPACE = "error"
DEFAULT_OUTCOME_FIELD = "outcome"

# Role that receives manual intervention tasks created by failure policies.
OPERATOR_ROLE = "operator"

# Names transition conditions use for the latest output and the whole context.
RESERVED_SCOPE_NAMES = ("output", "context")
