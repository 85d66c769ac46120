import logging
import logging.config
import os
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import orjson

_static_context: dict[str, Any] = {}
_dynamic_context: ContextVar[dict[str, Any]] = ContextVar(
    "td_job_results_logging_context", default={}
)


def set_context(**kwargs):
    global _static_context

    _static_context = kwargs


@contextmanager
def logging_context(**kwargs):
    # Scoped per asyncio task, so concurrent result streams never mix fields.
    token = _dynamic_context.set({**_dynamic_context.get(), **kwargs})
    try:
        yield
    finally:
        _dynamic_context.reset(token)


class LogFormatter(logging.Formatter):
    # Attributes of every LogRecord. Anything else on a record is a structured field.
    LOGGING_RECORD_KEYS = logging.LogRecord(
        "", 0, "", 0, None, None, None
    ).__dict__.keys() | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        fields = {
            k: v
            for k, v in record.__dict__.items()
            if k not in self.LOGGING_RECORD_KEYS
        }
        # `log.debug("msg", {"job_id": ...})` passes a single mapping as args.
        if isinstance(record.args, dict):
            fields.update(record.args)
        elif record.args:
            fields["args"] = record.args

        fields["source"] = record.name
        fields["file"] = f"{record.pathname}:{record.lineno}"

        if record.exc_info:
            fields["traceback"] = self.formatException(record.exc_info).splitlines()
        elif record.stack_info:
            fields["stack"] = self.formatStack(record.stack_info).splitlines()

        for context in (_static_context, _dynamic_context.get()):
            for k, v in context.items():
                fields.setdefault(k, v)

        return str(
            orjson.dumps(
                {
                    "level": record.levelname,
                    "msg": record.msg,
                    "fields": fields,
                },
                option=orjson.OPT_NON_STR_KEYS | orjson.OPT_UTC_Z,
                default=str,
            ),
            encoding="utf-8",
            errors="ignore",
        )


def init_logger(name: str = "td_job_results") -> logging.Logger:
    LOGGING_CONFIG = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": LogFormatter,
                "format": "",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
                "formatter": "json",
            },
        },
        "loggers": {
            name: {
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(LOGGING_CONFIG)

    logger = logging.getLogger(name)
    logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

    return logger
