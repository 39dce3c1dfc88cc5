from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from callaudit.core.models import Report, Rubric, ScoreResult

logger = logging.getLogger(__name__)

DEFAULT_PASS_THRESHOLD = 0.6


class ReportAssembler:
    """Recompute the final scores of a scorer result.

    The scorer's own ``ethics_flag`` and ``final_score`` are treated as
    reported values only. The flag is derived from the fatal/non-fatal ethics
    configuration, and non-fatal violations are deducted from the reported
    final score. ``assemble`` never mutates its input.
    """

    def __init__(
        self,
        fatal_ids: Iterable[str],
        cfg_penalties: Optional[Mapping[str, Any]] = None,
        pass_threshold: float = DEFAULT_PASS_THRESHOLD,
        known_ids: Optional[Iterable[str]] = None,
        criterion_max: Optional[Mapping[str, float]] = None,
    ) -> None:
        penalties = cfg_penalties or {}
        self.fatal_ids = frozenset(fatal_ids)
        self.known_ids = frozenset(known_ids) if known_ids is not None else None
        self.fatal_sets_flag = bool(penalties.get("fatal_flag_sets_ethics_flag", True))
        self.non_fatal_deduction = float(penalties.get("non_fatal_deduction", 1.0))
        self.clamp_min = float(penalties.get("clamp_min", 0.0))
        self.pass_threshold = float(pass_threshold)
        self.criterion_max = dict(criterion_max or {})

    @classmethod
    def from_rubric(
        cls,
        rubric: Rubric,
        cfg_penalties: Optional[Mapping[str, Any]] = None,
        cfg_report: Optional[Mapping[str, Any]] = None,
    ) -> "ReportAssembler":
        threshold = (cfg_report or {}).get("pass_threshold", DEFAULT_PASS_THRESHOLD)
        return cls(
            rubric.fatal_ids(),
            cfg_penalties,
            pass_threshold=threshold,
            known_ids=[c.id for c in rubric.ethics],
            criterion_max={c.id: c.max for c in (*rubric.mandatory, *rubric.general)},
        )

    def assemble(self, score_result: ScoreResult) -> Report:
        data = score_result.to_dict()
        return Report(
            result=data,
            scores=self.apply_ethics_penalties(data),
            summary=self.build_summary(data),
        )

    def apply_ethics_penalties(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        reported = data.get("scores") or {}
        ethics_flag = False
        deduction = 0.0

        for criterion in _block(data, "ethics"):
            if not criterion.get("violation"):
                continue
            crit_id = criterion.get("id")
            if self.known_ids is not None and crit_id not in self.known_ids:
                logger.warning("Ethics violation on unknown criterion '%s', counted as non-fatal", crit_id)
            if crit_id in self.fatal_ids:
                if self.fatal_sets_flag:
                    ethics_flag = True
            else:
                deduction += self.non_fatal_deduction

        final_score = max(float(reported.get("final_score") or 0.0) - deduction, self.clamp_min)
        return {
            "mandatory_avg": float(reported.get("mandatory_avg") or 0.0),
            "general_avg": float(reported.get("general_avg") or 0.0),
            "ethics_flag": ethics_flag,
            "final_score": final_score,
            "ethics_deduction": deduction,
        }

    def build_summary(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        criteria = _block(data, "mandatory") + _block(data, "general")
        passed = sum(1 for c in criteria if self._passed(c))
        total = len(criteria)
        triggers = data.get("triggers") or {}
        return {
            "total_criteria": total,
            "passed_criteria": passed,
            "pass_rate": passed / total if total else 0.0,
            "ethics_violations": sum(1 for c in _block(data, "ethics") if c.get("violation")),
            "trigger_count": len(triggers.get("lexicon_hits") or []) + len(triggers.get("audio_events") or []),
        }

    def _passed(self, criterion: Mapping[str, Any]) -> bool:
        # the rubric's max wins over the one echoed by the scorer
        max_points = self.criterion_max.get(criterion.get("id"))
        if max_points is None:
            max_points = float(criterion.get("max") or 0.0)
        if max_points <= 0:
            return False
        return float(criterion.get("score") or 0.0) / max_points >= self.pass_threshold


def _block(data: Mapping[str, Any], name: str) -> List[Mapping[str, Any]]:
    return list((data.get("blocks") or {}).get(name) or [])
