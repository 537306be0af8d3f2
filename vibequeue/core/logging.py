import logging
import sys
from typing import Optional

# atributos que todo LogRecord já tem; o resto veio de `extra={...}`
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "extra",
}


class SafeExtraFormatter(logging.Formatter):
    """
    Formatter que junta os campos passados em `extra={...}` em um único
    `%(extra)s`, sem quebrar quando não houver nenhum.
    """

    def format(self, record: logging.LogRecord) -> str:
        fields = {k: v for k, v in record.__dict__.items() if k not in _RESERVED}
        record.extra = fields or ""
        return super().format(record)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)

    formatter = SafeExtraFormatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s | %(extra)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
