from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Mapping

FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(cfg_logging: Mapping[str, Any], base_dir: Path | None = None) -> None:
    if not cfg_logging or not cfg_logging.get("enabled", True):
        return

    level_name = str(cfg_logging.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(fmt=FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)

    file_path = Path(cfg_logging.get("file_path", "logs/callaudit.log"))
    if base_dir is not None and not file_path.is_absolute():
        file_path = base_dir / file_path
    file_path.parent.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        file_path,
        maxBytes=int(cfg_logging.get("max_bytes", 1_048_576)),
        backupCount=int(cfg_logging.get("backup_count", 5)),
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if cfg_logging.get("console", False):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)
