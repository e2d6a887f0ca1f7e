import sys
import structlog
import logging
from oidc_bridge.shared.core.config import get_settings

SENSITIVE_FIELDS = {
    "token", "secret", "password", "client_secret", "connection_string",
    "aws_secret_access_key", "service_account_json", "authorization",
}


def secret_redactor(logger, method_name, event_dict):
    """
    Redact credentials from log events.
    Storage and upstream errors sometimes echo request parameters back.
    """
    for field in SENSITIVE_FIELDS:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ("details", "extra", "headers"):
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in SENSITIVE_FIELDS:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging():
    settings = get_settings()

    # 1. Choose the renderer based on environment
    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    # 2. Processor pipeline
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        secret_redactor,
        renderer
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # 3. Route library logs (botocore, azure, kubernetes, uvicorn) to stdout too
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
    # The Azure SDK logs every HTTP request at INFO
    logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)
