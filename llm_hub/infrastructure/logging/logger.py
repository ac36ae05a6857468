import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from llm_hub.config.settings import settings


class JsonFormatter(logging.Formatter):
    """每条日志输出一行 JSON，结构化字段通过 extra={"extra": {...}} 传入。"""

    def __init__(self, redact_content: bool = False):
        super().__init__()
        self._redact = redact_content

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self._redact:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("llm_hub")
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    if logger.handlers:
        return logger
    if not settings.log_dir:
        logger.addHandler(logging.NullHandler())
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "llm_hub.log", encoding="utf-8")
    fh.setLevel(logger.level)
    fh.setFormatter(JsonFormatter(redact_content=settings.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()


def log_event(level: int, message: str, **fields) -> None:
    logger.log(level, message, extra={"extra": fields})
