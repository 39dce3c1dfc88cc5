from __future__ import annotations

import copy
import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Segment:
    start: float
    end: float
    text: str
    speaker: Optional[str] = None
    avg_logprob: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Segment":
        logprob = data.get("avg_logprob")
        return cls(
            start=float(data.get("start") or 0.0),
            end=float(data.get("end") or 0.0),
            text=str(data.get("text") or "").strip(),
            speaker=data.get("speaker") or None,
            avg_logprob=float(logprob) if logprob is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"start": self.start, "end": self.end, "text": self.text}
        if self.speaker:
            out["speaker"] = self.speaker
        return out


@dataclass(frozen=True)
class Transcript:
    text: str
    language: str
    duration: float
    segments: Tuple[Segment, ...] = ()
    confidence: float = 0.0

    @classmethod
    def from_segments(
        cls, text: str, language: str, duration: float, segments: List[Segment]
    ) -> "Transcript":
        return cls(
            text=text,
            language=language,
            duration=float(duration or 0.0),
            segments=tuple(segments),
            confidence=segment_confidence(segments),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "language": self.language,
            "duration": self.duration,
            "segments": [s.to_dict() for s in self.segments],
            "confidence": self.confidence,
        }


def segment_confidence(segments: List[Segment]) -> float:
    # geometric mean of per-segment token probabilities
    if not segments:
        return 0.0
    total = sum(s.avg_logprob or 0.0 for s in segments)
    return math.exp(total / len(segments))


@dataclass(frozen=True)
class TriggerEvent:
    type: str
    term: Optional[str]
    t_start: float
    t_end: Optional[float]
    speaker: str
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type,
            "term": self.term,
            "t_start": self.t_start,
            "t_end": self.t_end,
            "speaker": self.speaker,
            "extra": dict(self.extra),
        }
        return {k: v for k, v in out.items() if v is not None}


@dataclass(frozen=True)
class Criterion:
    id: str
    title: str
    max: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "max": self.max}


@dataclass(frozen=True)
class EthicsCriterion:
    id: str
    title: str
    fatal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "fatal": self.fatal}


@dataclass(frozen=True)
class Rubric:
    id: str
    name: str
    mandatory: Tuple[Criterion, ...] = ()
    general: Tuple[Criterion, ...] = ()
    ethics: Tuple[EthicsCriterion, ...] = ()

    def criterion_ids(self) -> List[str]:
        return [c.id for c in (*self.mandatory, *self.general, *self.ethics)]

    def fatal_ids(self) -> List[str]:
        return [c.id for c in self.ethics if c.fatal]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mandatory": [c.to_dict() for c in self.mandatory],
            "general": [c.to_dict() for c in self.general],
            "ethics": [c.to_dict() for c in self.ethics],
        }


@dataclass(frozen=True)
class ScoreResult:
    """Scorer output as returned by the external service. Not trusted for totals."""

    call_meta: Dict[str, Any]
    blocks: Dict[str, Any]
    triggers: Dict[str, Any]
    scores: Dict[str, Any]
    recommendations: List[Dict[str, Any]] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreResult":
        return cls(
            call_meta=data.get("call_meta", {}),
            blocks=data.get("blocks", {}),
            triggers=data.get("triggers", {}),
            scores=data.get("scores", {}),
            recommendations=data.get("recommendations", []),
            diagnostics=data.get("diagnostics", {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "call_meta": self.call_meta,
                "blocks": self.blocks,
                "triggers": self.triggers,
                "scores": self.scores,
                "recommendations": self.recommendations,
                "diagnostics": self.diagnostics,
            }
        )


@dataclass(frozen=True)
class Report:
    result: Dict[str, Any]
    scores: Dict[str, Any]
    summary: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.result)
        data["scores"] = dict(self.scores)
        data["summary"] = dict(self.summary)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True, indent=2)


class JobStatus(str, Enum):
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    ANALYZING_METRICS = "analyzing_metrics"
    DETECTING_TRIGGERS = "detecting_triggers"
    BUILDING_RUBRIC = "building_rubric"
    SCORING = "scoring"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


PIPELINE_ORDER = [
    JobStatus.UPLOADED,
    JobStatus.TRANSCRIBING,
    JobStatus.ANALYZING_METRICS,
    JobStatus.DETECTING_TRIGGERS,
    JobStatus.BUILDING_RUBRIC,
    JobStatus.SCORING,
    JobStatus.ASSEMBLING,
    JobStatus.DONE,
]


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    if current.terminal:
        return False
    if new is JobStatus.FAILED:
        return True
    return PIPELINE_ORDER.index(new) == PIPELINE_ORDER.index(current) + 1


@dataclass
class Job:
    id: str
    status: JobStatus
    created_at: str
    updated_at: str
    audio_path: str
    audio_sha256: str = ""
    rubric_path: Optional[str] = None
    lang: str = "auto"
    webhook_url: Optional[str] = None
    error: Optional[str] = None
