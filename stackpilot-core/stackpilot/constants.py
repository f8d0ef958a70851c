import os

# default folder holding the persisted state of applied stacks
DEFAULT_CONFIG_DIR = os.path.expanduser("~/.stackpilot")

# default values for the pseudo parameters
DEFAULT_REGION = "us-east-1"
DEFAULT_ACCOUNT_ID = "000000000000"
DEFAULT_PARTITION = "aws"
DEFAULT_STACK_NAME = "stack"

# version of the persisted state record format
STATE_FORMAT_VERSION = 1

# values considered true when parsing boolean environment variables
TRUE_STRINGS = ("1", "true", "True")

# log levels accepted by the SP_LOG environment variable
LOG_LEVELS = ("trace", "debug", "info", "warn", "error", "warning")
SP_LOG_TRACE = "trace"
TRACE_LOG_LEVELS = [SP_LOG_TRACE]

# replacement strategies for resources that cannot be updated in place
CREATE_BEFORE_DELETE = "create_before_delete"
DELETE_BEFORE_CREATE = "delete_before_create"
REPLACEMENT_STRATEGIES = (CREATE_BEFORE_DELETE, DELETE_BEFORE_CREATE)
