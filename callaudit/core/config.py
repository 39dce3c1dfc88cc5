from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple

import yaml

from callaudit.core.errors import ConfigError


DEFAULT_AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".ogg", ".flac")


@dataclass(frozen=True)
class AppConfig:
    base_dir: Path
    input_dir: Path
    processed_dir: Path
    failed_dir: Path
    db_path: Path
    audio_extensions: Tuple[str, ...]
    transcription: Mapping[str, Any]
    scoring: Mapping[str, Any]
    audio_metrics: Mapping[str, Any]
    lexicon_triggers: Mapping[str, Any]
    rubric: Mapping[str, Any]
    ethics_penalties: Mapping[str, Any]
    report: Mapping[str, Any]
    watcher: Mapping[str, Any]
    batch: Mapping[str, Any]
    webhook: Mapping[str, Any]
    logging: Mapping[str, Any]

    def resolve(self, path: str | Path) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.base_dir / p


def load_config(path: Path) -> AppConfig:
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return config_from_dict(raw, path.resolve().parent)


def config_from_dict(raw: Dict[str, Any], base_dir: Path) -> AppConfig:
    if "db_path" not in raw:
        raise ConfigError("db_path is required")

    def _path(key: str, default: str) -> Path:
        p = Path(raw.get(key, default))
        return p if p.is_absolute() else base_dir / p

    exts = raw.get("audio_extensions") or DEFAULT_AUDIO_EXTENSIONS
    return AppConfig(
        base_dir=base_dir,
        input_dir=_path("input_dir", "data/incoming"),
        processed_dir=_path("processed_dir", "data/processed"),
        failed_dir=_path("failed_dir", "data/failed"),
        db_path=_path("db_path", "data/callaudit.sqlite"),
        audio_extensions=tuple(e.lower() for e in exts),
        transcription=_section(raw, "transcription"),
        scoring=_section(raw, "scoring"),
        audio_metrics=_section(raw, "audio_metrics"),
        lexicon_triggers=_section(raw, "lexicon_triggers"),
        rubric=_section(raw, "rubric"),
        ethics_penalties=_section(raw, "ethics_penalties"),
        report=_section(raw, "report"),
        watcher=_section(raw, "watcher"),
        batch=_section(raw, "batch"),
        webhook=_section(raw, "webhook"),
        logging=_section(raw, "logging"),
    )


def _section(raw: Dict[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"section '{key}' must be a mapping")
    return _freeze(value)


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value
