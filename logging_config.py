import logging
import sys

import structlog


def _app_context(app_name: str):
    def add_app_name(logger, method_name, event_dict):
        event_dict["app_name"] = app_name
        return event_dict

    return add_app_name


def setup_logging(level: str = "INFO", app_name: str = "affiliate-commissions") -> None:
    """
    JSON logs on stdout via structlog on top of stdlib logging.
    safe to call more than once (handlers are replaced, not stacked).
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _app_context(app_name),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
