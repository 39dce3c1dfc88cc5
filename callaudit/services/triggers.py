from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from callaudit.core.models import Transcript, TriggerEvent
from callaudit.core.speakers import attribute_speakers

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^\w\s]|_")
_SPACES = re.compile(r"\s+")

DEFAULT_OBFUSCATION_CHARS = ("*", "_")


def normalize_text(text: str, options: Optional[Mapping[str, Any]] = None) -> str:
    opts = options or {}
    if opts.get("lower", True):
        text = text.casefold()
    if opts.get("deobfuscate", True):
        # "f*ck" and "f_ck" collapse to "fck" before punctuation is stripped
        for ch in opts.get("obfuscation_chars", DEFAULT_OBFUSCATION_CHARS):
            text = text.replace(ch, "")
    if opts.get("strip_punct", True):
        text = _NON_WORD.sub(" ", text)
    if opts.get("collapse_spaces", True):
        text = _SPACES.sub(" ", text)
    return text.strip()


def load_lexicons(cfg_lexicon: Mapping[str, Any], base_dir: Path) -> Dict[str, List[Tuple[str, str]]]:
    """Load every category's terms from files and inline lists.

    Returns ``{category: [(raw_term, normalized_term), ...]}``. Terms are
    normalized once here; duplicates (after normalization) and terms that
    normalize to nothing are dropped.
    """
    options = cfg_lexicon.get("normalize") or {}
    lexicons: Dict[str, List[Tuple[str, str]]] = {}
    for name, category in (cfg_lexicon.get("categories") or {}).items():
        raw_terms: List[str] = []
        for file_name in category.get("files") or ():
            path = Path(file_name)
            if not path.is_absolute():
                path = base_dir / path
            if not path.exists():
                logger.warning("Lexicon file for '%s' not found: %s", name, path)
                continue
            for line in path.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if line and not line.startswith("#"):
                    raw_terms.append(line)
        raw_terms.extend(category.get("inline") or ())

        terms: List[Tuple[str, str]] = []
        seen = set()
        for term in raw_terms:
            norm = normalize_text(term, options)
            if norm and norm not in seen:
                seen.add(norm)
                terms.append((term, norm))
        lexicons[name] = terms
        logger.debug("Lexicon '%s': %d terms", name, len(terms))
    return lexicons


class TriggerDetector:
    def __init__(self, cfg_lexicon: Mapping[str, Any], base_dir: Path) -> None:
        self.enabled = bool(cfg_lexicon.get("enable", True))
        self.options = cfg_lexicon.get("normalize") or {}
        self.lexicons = load_lexicons(cfg_lexicon, base_dir) if self.enabled else {}

    def detect(self, transcript: Transcript) -> List[TriggerEvent]:
        if not self.enabled:
            return []

        events: List[TriggerEvent] = []
        speakers = attribute_speakers(transcript.segments)
        for index, (segment, speaker) in enumerate(zip(transcript.segments, speakers)):
            normalized = normalize_text(segment.text, self.options)
            if not normalized:
                continue
            for category, terms in self.lexicons.items():
                for raw_term, term in terms:
                    if term in normalized:
                        events.append(
                            TriggerEvent(
                                type=category,
                                term=raw_term,
                                t_start=segment.start,
                                t_end=segment.end,
                                speaker=speaker,
                                extra={"segment_index": index},
                            )
                        )
        return events
