from __future__ import annotations

import logging
import uuid
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from callaudit.core.errors import RubricInvalid
from callaudit.core.models import Criterion, EthicsCriterion, Rubric

logger = logging.getLogger(__name__)

BLOCKS = ("mandatory", "general", "ethics")
DEFAULT_CALL_TYPES = ("ptp", "refusal", "third_party")
SPEAKERS = ["agent", "client"]
SEVERITIES = ["low", "medium", "high"]
SHEET_COLUMNS = {"block", "id", "title", "max"}


def rubric_from_config(cfg_rubric: Mapping[str, Any]) -> Rubric:
    rubric = Rubric(
        id=str(uuid.uuid4()),
        name=cfg_rubric.get("name", "Default Rubric"),
        mandatory=tuple(_criterion(c) for c in cfg_rubric.get("mandatory") or ()),
        general=tuple(_criterion(c) for c in cfg_rubric.get("general") or ()),
        ethics=tuple(_ethics(c) for c in cfg_rubric.get("ethics") or ()),
    )
    validate_rubric(rubric)
    return rubric


def _criterion(raw: Mapping[str, Any]) -> Criterion:
    try:
        return Criterion(id=str(raw["id"]), title=str(raw.get("title") or raw["id"]), max=float(raw["max"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise RubricInvalid(f"bad criterion {dict(raw)!r}: {exc}") from exc


def _ethics(raw: Mapping[str, Any]) -> EthicsCriterion:
    try:
        return EthicsCriterion(
            id=str(raw["id"]), title=str(raw.get("title") or raw["id"]), fatal=_truthy(raw.get("fatal"))
        )
    except (KeyError, TypeError) as exc:
        raise RubricInvalid(f"bad ethics criterion {dict(raw)!r}: {exc}") from exc


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "fatal", "x"}
    return bool(value)


def validate_rubric(rubric: Rubric) -> None:
    ids = rubric.criterion_ids()
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        raise RubricInvalid(f"criterion ids used more than once: {', '.join(dupes)}")
    for c in (*rubric.mandatory, *rubric.general):
        if c.max <= 0:
            raise RubricInvalid(f"criterion '{c.id}' must have max > 0")


class RubricBuilder:
    def __init__(self, cfg_rubric: Mapping[str, Any]) -> None:
        self.cfg = cfg_rubric
        self.call_types = tuple(cfg_rubric.get("call_types") or DEFAULT_CALL_TYPES)

    def build(self, spreadsheet_path: Optional[str] = None) -> Rubric:
        if spreadsheet_path and Path(spreadsheet_path).exists():
            return self.build_from_spreadsheet(Path(spreadsheet_path))
        if spreadsheet_path:
            logger.warning("Rubric spreadsheet %s not found, using configured rubric", spreadsheet_path)
        return rubric_from_config(self.cfg)

    def build_from_spreadsheet(self, path: Path) -> Rubric:
        """Read criteria from a sheet laid out as a table.

        The header row must name ``block``, ``id``, ``title`` and ``max``
        (``fatal`` is optional, used for ethics rows). Workbooks in any other
        layout fall back to the configured rubric.
        """
        import openpyxl
        from openpyxl.utils.exceptions import InvalidFileException

        try:
            wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError) as exc:
            raise RubricInvalid(f"cannot read rubric spreadsheet {path.name}: {exc}") from exc

        try:
            sheet_name = self.cfg.get("sheet_name")
            ws = wb[sheet_name] if sheet_name and sheet_name in wb.sheetnames else wb.worksheets[0]
            rows = [list(r) for r in ws.iter_rows(values_only=True)]
        finally:
            wb.close()

        criteria = parse_rubric_rows(rows)
        if criteria is None:
            logger.warning("Spreadsheet %s has no rubric table, using configured rubric", path.name)
            return rubric_from_config(self.cfg)

        rubric = Rubric(
            id=str(uuid.uuid4()),
            name=f"Custom rubric ({path.stem})",
            mandatory=tuple(_criterion(c) for c in criteria["mandatory"]),
            general=tuple(_criterion(c) for c in criteria["general"]),
            ethics=tuple(_ethics(c) for c in criteria["ethics"]),
        )
        validate_rubric(rubric)
        return rubric

    def schema(self, rubric: Rubric) -> Dict[str, Any]:
        return build_json_schema(rubric, self.call_types)


def parse_rubric_rows(rows: Sequence[Sequence[Any]]) -> Optional[Dict[str, List[Dict[str, Any]]]]:
    header_idx = None
    columns: Dict[str, int] = {}
    for i, row in enumerate(rows):
        names = [str(v).strip().lower() if v is not None else "" for v in row]
        if SHEET_COLUMNS.issubset(names):
            header_idx = i
            columns = {name: names.index(name) for name in (*SHEET_COLUMNS, "fatal") if name in names}
            break
    if header_idx is None:
        return None

    def cell(row: Sequence[Any], name: str) -> Any:
        idx = columns.get(name)
        return row[idx] if idx is not None and idx < len(row) else None

    criteria: Dict[str, List[Dict[str, Any]]] = {b: [] for b in BLOCKS}
    for n, row in enumerate(rows[header_idx + 1 :], start=header_idx + 2):
        block = cell(row, "block")
        crit_id = cell(row, "id")
        if block is None and crit_id is None:
            continue
        block = str(block or "").strip().lower()
        if block not in criteria:
            raise RubricInvalid(f"row {n}: unknown block '{block}'")
        if crit_id is None or str(crit_id).strip() == "":
            raise RubricInvalid(f"row {n}: missing criterion id")
        entry = {"id": str(crit_id).strip(), "title": cell(row, "title") or str(crit_id).strip()}
        if block == "ethics":
            entry["fatal"] = cell(row, "fatal")
        else:
            entry["max"] = cell(row, "max")
        criteria[block].append(entry)
    return criteria


def _obj(properties: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties.keys()),
        "additionalProperties": False,
    }


def _array(items: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "array", "items": items}


def _id_field(ids: Iterable[str]) -> Dict[str, Any]:
    ids = list(ids)
    field: Dict[str, Any] = {"type": "string"}
    if ids:
        field["enum"] = ids
    return field


def _criteria_schema(criteria: Sequence[Criterion]) -> Dict[str, Any]:
    return _array(
        _obj(
            {
                "id": _id_field(c.id for c in criteria),
                "title": {"type": "string"},
                "max": {"type": "number"},
                "score": {"type": "number"},
                "evidence": _array(_obj({"t": {"type": "number"}, "text": {"type": "string"}})),
                "comment": {"type": "string"},
            }
        )
    )


def _ethics_schema(ethics: Sequence[EthicsCriterion]) -> Dict[str, Any]:
    return _array(
        _obj(
            {
                "id": _id_field(c.id for c in ethics),
                "title": {"type": "string"},
                "violation": {"type": "boolean"},
                "timestamps": _array({"type": "number"}),
                "comment": {"type": "string"},
            }
        )
    )


def build_json_schema(rubric: Rubric, call_types: Sequence[str] = DEFAULT_CALL_TYPES) -> Dict[str, Any]:
    """Compile a rubric into the strict response schema handed to the scorer.

    Pure: the same rubric always yields the same schema, no I/O involved.
    """
    return _obj(
        {
            "call_meta": _obj(
                {
                    "call_type": {"type": "string", "enum": list(call_types)},
                    "language": {"type": "string"},
                    "duration_sec": {"type": "number"},
                    "agent_name": {"type": "string"},
                    "client_name": {"type": "string"},
                }
            ),
            "blocks": _obj(
                {
                    "mandatory": _criteria_schema(rubric.mandatory),
                    "general": _criteria_schema(rubric.general),
                    "ethics": _ethics_schema(rubric.ethics),
                }
            ),
            "triggers": _obj(
                {
                    "lexicon_hits": _array(
                        _obj(
                            {
                                "type": {"type": "string"},
                                "term": {"type": "string"},
                                "t": {"type": "number"},
                                "speaker": {"type": "string", "enum": list(SPEAKERS)},
                                "context": {"type": "string"},
                                "severity": {"type": "string", "enum": list(SEVERITIES)},
                            }
                        )
                    ),
                    "audio_events": _array(
                        _obj(
                            {
                                "type": {"type": "string"},
                                "delta_db": {"type": "number"},
                                "t_start": {"type": "number"},
                                "t_end": {"type": "number"},
                                "speaker": {"type": "string"},
                            }
                        )
                    ),
                }
            ),
            "scores": _obj(
                {
                    "mandatory_avg": {"type": "number"},
                    "general_avg": {"type": "number"},
                    "ethics_flag": {"type": "boolean"},
                    "final_score": {"type": "number"},
                }
            ),
            "recommendations": _array(
                _obj({"when": {"type": "string"}, "tip": {"type": "string"}, "example": {"type": "string"}})
            ),
            "diagnostics": _obj(
                {
                    "transcript_confidence": {"type": "number"},
                    "audio_lufs": {"type": "number"},
                    "agent_talk_ratio": {"type": "number"},
                    "overlap_ratio": {"type": "number"},
                    "avg_response_latency_sec": {"type": "number"},
                }
            ),
        }
    )
