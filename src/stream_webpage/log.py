"""ログ設定."""

import json
import logging

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """1 行 1 JSON オブジェクトで出力する Formatter."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def parse_level(name: str) -> int:
    """ログレベル名を変換する. 不明な値は INFO."""
    return _LEVELS.get(name.strip().lower(), logging.INFO)


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """ルートロガーを設定する (複数回呼んでも上書きされる)."""
    handler = logging.StreamHandler()
    if fmt.strip().lower() == "console":
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    else:
        handler.setFormatter(JsonFormatter())

    logging.basicConfig(level=parse_level(level), handlers=[handler], force=True)

    # ステータス API のポーリングでリクエストごとに INFO が出るのを抑える
    logging.getLogger("httpx").setLevel(logging.WARNING)
