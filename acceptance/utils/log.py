# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
"""
Structured logs for the harness and the in-process registry.

LOG_LEVEL env var sets the root logging level (DEBUG, INFO, etc).
Under pytest records are left to pytest log capture, use ``--logs`` to
see them live. Otherwise they go to stderr.
"""
import logging
import logging.config
import os
import pathlib
import sys
from typing import Any, cast

import _pytest.logging
import structlog
import structlog.types


__all__ = ("get_logger",)

LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").upper()


def stringify_paths(
    logger: logging.Logger, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    return {
        k: str(v) if isinstance(v, pathlib.PurePath) else v
        for k, v in event_dict.items()
    }


class Console(structlog.dev.ConsoleRenderer):
    # strings render unquoted
    def _repr(self, val: Any) -> str:
        return val if isinstance(val, str) else repr(val)


RENDERER = Console()

PRE_CHAIN: list[structlog.types.Processor] = [
    stringify_paths,
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
]


def formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processor=RENDERER, foreign_pre_chain=PRE_CHAIN
    )


# pytest builds its log formatters itself
_pytest.logging.LoggingPlugin._create_formatter = cast(
    Any, lambda self, *args, **kwargs: formatter()
)

logging.config.dictConfig(
    {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"console": {"()": formatter}},
        "handlers": {
            "stderr": {"class": "logging.StreamHandler", "formatter": "console"},
            "null": {"class": "logging.NullHandler"},
        },
        "loggers": {
            "": {
                "level": LEVEL,
                "handlers": ["null" if "pytest" in " ".join(sys.argv) else "stderr"],
            },
            # uvicorn logs every blob chunk docker pushes to the registry
            "uvicorn": {"level": "WARNING"},
            "uvicorn.access": {"level": "WARNING"},
        },
    }
)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        *PRE_CHAIN,
        structlog.processors.StackInfoRenderer(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

get_logger = structlog.stdlib.get_logger
