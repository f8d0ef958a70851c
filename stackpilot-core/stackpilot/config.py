import logging
import os
from typing import Optional, Union

from stackpilot.constants import (
    DEFAULT_ACCOUNT_ID,
    DEFAULT_CONFIG_DIR,
    DEFAULT_PARTITION,
    DEFAULT_REGION,
    LOG_LEVELS,
    REPLACEMENT_STRATEGIES,
    TRACE_LOG_LEVELS,
    TRUE_STRINGS,
)


def eval_log_type(env_var_name: str) -> Union[str, bool]:
    """Get the log type from environment variable"""
    sp_log = os.environ.get(env_var_name, "").lower().strip()
    return sp_log if sp_log in LOG_LEVELS else False


def is_env_true(env_var_name: str) -> bool:
    """Whether the given environment variable has a truthy value."""
    return os.environ.get(env_var_name, "").lower().strip() in TRUE_STRINGS


def parse_replacement_strategy(env_var_name: str) -> Optional[str]:
    value = os.environ.get(env_var_name, "").lower().strip()
    if not value:
        return None
    if value not in REPLACEMENT_STRATEGIES:
        LOG.warning(
            "Ignoring unknown %s value %r, expected one of %s",
            env_var_name,
            value,
            ", ".join(REPLACEMENT_STRATEGIES),
        )
        return None
    return value


LOG = logging.getLogger(__name__)

# folder containing the stackpilot configuration and default state
CONFIG_DIR = os.environ.get("CONFIG_DIR", "").strip() or DEFAULT_CONFIG_DIR

# folder used by the file based state store
STATE_DIR = os.environ.get("STATE_DIR", "").strip() or os.path.join(CONFIG_DIR, "state")

# log level, and whether to enable debug output
SP_LOG = eval_log_type("SP_LOG")
DEBUG = is_env_true("DEBUG") or SP_LOG in TRACE_LOG_LEVELS

# values of the AWS::Region / AWS::AccountId / AWS::Partition pseudo parameters
REGION = os.environ.get("DEFAULT_REGION", "").strip() or DEFAULT_REGION
ACCOUNT_ID = os.environ.get("DEFAULT_ACCOUNT_ID", "").strip() or DEFAULT_ACCOUNT_ID
PARTITION = os.environ.get("DEFAULT_PARTITION", "").strip() or DEFAULT_PARTITION

# maximum number of resources that are applied concurrently
APPLY_MAX_WORKERS = int(os.environ.get("APPLY_MAX_WORKERS", "").strip() or 8)

# retries of provider calls failing with a transient error (throttling, timeouts)
PROVIDER_MAX_RETRIES = int(os.environ.get("PROVIDER_MAX_RETRIES", "").strip() or 4)
PROVIDER_RETRY_INITIAL_INTERVAL = float(
    os.environ.get("PROVIDER_RETRY_INITIAL_INTERVAL", "").strip() or 0.5
)
PROVIDER_RETRY_MAX_INTERVAL = float(
    os.environ.get("PROVIDER_RETRY_MAX_INTERVAL", "").strip() or 10
)

# attempts per compensating action during a rollback (the first try plus one retry)
ROLLBACK_MAX_ATTEMPTS = int(os.environ.get("ROLLBACK_MAX_ATTEMPTS", "").strip() or 2)

# forces the replacement ordering for all resource types, if set
REPLACEMENT_STRATEGY = parse_replacement_strategy("REPLACEMENT_STRATEGY")

# keep the partially applied resources instead of rolling back on failure
DISABLE_ROLLBACK = is_env_true("DISABLE_ROLLBACK")


def is_trace_logging_enabled():
    if SP_LOG:
        log_level = str(SP_LOG).upper()
        return log_level.lower() in TRACE_LOG_LEVELS
    return False


# set log levels immediately, but will be overwritten later by setup_logging
if DEBUG:
    logging.getLogger("").setLevel(logging.DEBUG)
    logging.getLogger("stackpilot").setLevel(logging.DEBUG)
