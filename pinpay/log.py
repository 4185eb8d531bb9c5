"""
Structured logging setup
"""

import logging

import structlog


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog for the gateway process"""
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
    )


def mask_pin(pin: str) -> str:
    """Hide all but the last two digits of a PIN"""
    return "*" * max(len(pin) - 2, 0) + pin[-2:]
