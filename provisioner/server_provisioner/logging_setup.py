from __future__ import annotations
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from .settings import Settings

ROOT_LOGGER = "provision"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event is not None:
            payload["event"] = event
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(settings: Settings) -> None:
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(settings.log_level.upper())
    ours = logging.getLogger(ROOT_LOGGER)
    for h in ours.handlers:
        h.close()
    ours.handlers.clear()

    fmt = _JsonFormatter() if settings.log_json else logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    try:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(settings.logs_dir / "provision.log", maxBytes=5_000_000, backupCount=3,
                                 encoding="utf-8")
    except OSError as e:
        # not root yet, or install root not created: keep console logging
        root.warning("Could not open log file in %s (%s), continuing with console logging only.",
                     settings.logs_dir, e)
        return
    fh.setFormatter(fmt)
    fh.setLevel(settings.log_level.upper())
    logging.getLogger(ROOT_LOGGER).addHandler(fh)
    logging.getLogger(ROOT_LOGGER).propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
