from __future__ import annotations

import hashlib
from datetime import datetime
from pathlib import Path


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def safe_move(src: Path, dst_dir: Path, name: str | None = None) -> Path:
    """Move ``src`` into ``dst_dir`` without replacing an existing file.

    A clash gets a numeric suffix (``call_1.wav``). Returns the new path.
    """
    dst_dir.mkdir(parents=True, exist_ok=True)
    base = Path(name or src.name)
    dst = dst_dir / base.name
    n = 0
    while dst.exists():
        n += 1
        dst = dst_dir / f"{base.stem}_{n}{base.suffix}"
    src.rename(dst)
    return dst


def now_str() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")
