"""
Product Service — ログ設定

API プロセスとワーカープロセスの両方が起動時に一度だけ呼ぶ。
各モジュールは logging.getLogger(__name__) で取得したロガーに書くだけ。
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [product-service] %(name)s: %(message)s"

# DEBUG 以外では WARNING 以上だけを出すライブラリ
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite")


def setup_logging(level: str = "INFO") -> None:
    """ルートロガーの出力先を stdout のハンドラ1つに揃える。"""
    level = level.upper()
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    quiet = logging.DEBUG if level == "DEBUG" else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)
