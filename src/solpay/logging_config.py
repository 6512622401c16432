import logging
from contextvars import ContextVar

import structlog
from opentelemetry.trace import get_current_span

# Payment currently being processed, carried across async boundaries
payment_id_ctx: ContextVar[str | None] = ContextVar("payment_id", default=None)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def add_otel_context(logger, method_name, event_dict):
    """Add the current span's trace and span ids so log lines join up with traces."""
    span_context = get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def configure_logging(log_level: str = "info") -> None:
    """Configure structlog to output JSON and route stdlib logging to stdout."""
    level = _LEVELS.get(log_level.lower(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_otel_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance, optionally with a specific name."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


def bind_payment_context(payment_id: str, order_id: str | None = None) -> None:
    """Bind payment/order ids to the structlog context for correlation."""
    payment_id_ctx.set(payment_id)
    structlog.contextvars.bind_contextvars(payment_id=payment_id)
    if order_id:
        structlog.contextvars.bind_contextvars(order_id=order_id)


def clear_payment_context() -> None:
    payment_id_ctx.set(None)
    structlog.contextvars.unbind_contextvars("payment_id", "order_id")
