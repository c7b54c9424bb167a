"""共通 — ロギング設定"""

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(service: str) -> logging.Logger:
    """LOG_LEVEL 環境変数に従ってルートロガーを設定する。"""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)

    # ライブラリのノイズを抑える
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger(service)
    logger.info("Logging configured for %s (level=%s)", service, level)
    return logger
