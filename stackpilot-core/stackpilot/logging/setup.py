import logging
import sys
import warnings

from stackpilot import config, constants

from .format import AddFormattedAttributes, DefaultFormatter, ResourceTraceFormatter

# The log levels for modules are evaluated incrementally for logging granularity,
# from highest (DEBUG) to lowest (TRACE). Hence, each module below should have
# higher level which serves as the default.

default_log_levels = {
    "asyncio": logging.INFO,
    "plux": logging.WARNING,
    "stackpilot.providers": logging.INFO,
    "stackpilot.engine.trace": logging.WARNING,
    "stackpilot.utils.backoff": logging.INFO,
}

trace_log_levels = {
    "stackpilot.providers": logging.DEBUG,
    "stackpilot.engine.trace": logging.DEBUG,
    "stackpilot.utils.backoff": logging.DEBUG,
}


def get_log_level_from_config():
    # overriding the log level if SP_LOG has been set
    if config.SP_LOG:
        log_level = str(config.SP_LOG).upper()
        if log_level.lower() in constants.TRACE_LOG_LEVELS:
            log_level = "DEBUG"
        log_level = logging._nameToLevel[log_level]
        return log_level

    return logging.DEBUG if config.DEBUG else logging.INFO


def setup_logging_from_config():
    log_level = get_log_level_from_config()
    setup_logging(log_level)

    if config.is_trace_logging_enabled():
        for name, level in trace_log_levels.items():
            logging.getLogger(name).setLevel(level)


def create_default_handler(log_level: int):
    log_handler = logging.StreamHandler(stream=sys.stderr)
    log_handler.setLevel(log_level)
    log_handler.setFormatter(DefaultFormatter())
    log_handler.addFilter(AddFormattedAttributes())
    return log_handler


def setup_logging(log_level=logging.INFO) -> None:
    """
    Configures the python logging environment for stackpilot.

    :param log_level: the optional log level.
    """
    # set create a default handler for the root logger (basically logging.basicConfig but explicit)
    log_handler = create_default_handler(log_level)

    # replace any existing handlers
    logging.basicConfig(level=log_level, handlers=[log_handler])

    # disable some logs and warnings
    warnings.filterwarnings("ignore")
    logging.captureWarnings(True)

    # set log levels of loggers
    logging.root.setLevel(log_level)
    logging.getLogger("stackpilot").setLevel(log_level)
    for logger, level in default_log_levels.items():
        logging.getLogger(logger).setLevel(level)

    setup_trace_logger()


def setup_trace_logger() -> None:
    """
    Attaches a dedicated handler to the ``stackpilot.engine.trace`` logger, which receives one record per
    provider call and renders the resource context of each record.
    """
    logger = logging.getLogger("stackpilot.engine.trace")
    if any(isinstance(h.formatter, ResourceTraceFormatter) for h in logger.handlers):
        return
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.addFilter(AddFormattedAttributes())
    handler.setFormatter(ResourceTraceFormatter())
    logger.addHandler(handler)
    logger.propagate = False
