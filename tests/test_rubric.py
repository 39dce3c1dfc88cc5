"""
Rubric construction (config and spreadsheet) and the compiled response schema.
"""

import jsonschema
import openpyxl
import pytest

from callaudit.core.errors import RubricInvalid
from callaudit.core.models import Criterion, EthicsCriterion, Rubric
from callaudit.services.rubric import RubricBuilder, build_json_schema, rubric_from_config
from tests.conftest import make_score_payload


CRITERION_KEYS = {"id", "title", "max", "score", "evidence", "comment"}


def _walk_objects(schema):
    if isinstance(schema, dict):
        if schema.get("type") == "object":
            yield schema
        for value in schema.values():
            yield from _walk_objects(value)
    elif isinstance(schema, list):
        for value in schema:
            yield from _walk_objects(value)


def _write_workbook(path, rows, title="Rubric"):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = title
    for row in rows:
        ws.append(row)
    wb.save(path)


class TestRubricFromConfig:
    def test_blocks_are_built(self, rubric):
        assert [c.id for c in rubric.mandatory] == ["greeting", "purpose"]
        assert [c.id for c in rubric.general] == ["listening", "closing"]
        assert rubric.fatal_ids() == ["threats"]

    def test_duplicate_ids_rejected(self):
        cfg = {
            "mandatory": [{"id": "a", "title": "A", "max": 1}],
            "general": [{"id": "a", "title": "A again", "max": 1}],
        }
        with pytest.raises(RubricInvalid, match="more than once"):
            rubric_from_config(cfg)

    def test_missing_max_rejected(self):
        with pytest.raises(RubricInvalid):
            rubric_from_config({"mandatory": [{"id": "a", "title": "A"}]})

    def test_zero_max_rejected(self):
        with pytest.raises(RubricInvalid, match="max > 0"):
            rubric_from_config({"general": [{"id": "a", "title": "A", "max": 0}]})


class TestSpreadsheet:
    def test_tabular_sheet_is_parsed(self, tmp_path):
        path = tmp_path / "custom.xlsx"
        _write_workbook(
            path,
            [
                ["Company rubric"],
                ["Block", "ID", "Title", "Max", "Fatal"],
                ["mandatory", "hello", "Says hello", 2, None],
                ["general", "tone", "Friendly tone", 4, None],
                ["ethics", "abuse", "Verbal abuse", None, "yes"],
                [None, None, None, None, None],
            ],
        )
        rubric = RubricBuilder({"sheet_name": "Rubric"}).build(str(path))
        assert rubric.mandatory == (Criterion("hello", "Says hello", 2.0),)
        assert rubric.general == (Criterion("tone", "Friendly tone", 4.0),)
        assert rubric.ethics == (EthicsCriterion("abuse", "Verbal abuse", True),)

    def test_sheet_without_table_falls_back_to_config(self, tmp_path, app_config):
        path = tmp_path / "free_form.xlsx"
        _write_workbook(path, [["Some notes"], ["nothing tabular here"]])
        rubric = RubricBuilder(app_config.rubric).build(str(path))
        assert rubric.name == "Test Rubric"

    def test_unreadable_file_raises(self, tmp_path, app_config):
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"not a zip file")
        with pytest.raises(RubricInvalid):
            RubricBuilder(app_config.rubric).build(str(path))

    def test_unknown_block_raises(self, tmp_path):
        path = tmp_path / "bad_block.xlsx"
        _write_workbook(path, [["block", "id", "title", "max"], ["bonus", "x", "X", 1]])
        with pytest.raises(RubricInvalid, match="unknown block"):
            RubricBuilder({}).build(str(path))

    def test_missing_path_uses_config(self, tmp_path, app_config):
        rubric = RubricBuilder(app_config.rubric).build(str(tmp_path / "nope.xlsx"))
        assert rubric.name == "Test Rubric"


class TestJsonSchema:
    def test_criterion_items_require_exact_keys(self, rubric):
        schema = build_json_schema(rubric)
        blocks = schema["properties"]["blocks"]["properties"]
        for name in ("mandatory", "general"):
            item = blocks[name]["items"]
            assert set(item["required"]) == CRITERION_KEYS
            assert set(item["properties"]) == CRITERION_KEYS
            assert item["additionalProperties"] is False

    def test_every_object_is_closed_and_fully_required(self, rubric):
        for obj in _walk_objects(build_json_schema(rubric)):
            assert obj["additionalProperties"] is False
            assert set(obj["required"]) == set(obj["properties"])

    def test_criterion_ids_are_enumerated(self, rubric):
        blocks = build_json_schema(rubric)["properties"]["blocks"]["properties"]
        assert blocks["mandatory"]["items"]["properties"]["id"]["enum"] == ["greeting", "purpose"]
        assert blocks["ethics"]["items"]["properties"]["id"]["enum"] == ["threats", "rudeness"]

    def test_empty_block_has_no_enum(self):
        schema = build_json_schema(Rubric(id="r", name="empty"))
        item = schema["properties"]["blocks"]["properties"]["general"]["items"]
        assert "enum" not in item["properties"]["id"]

    def test_schema_is_pure(self, rubric):
        assert build_json_schema(rubric) == build_json_schema(rubric)

    def test_valid_payload_passes(self, rubric):
        jsonschema.validate(make_score_payload(), build_json_schema(rubric))

    def test_extra_field_is_rejected(self, rubric):
        payload = make_score_payload()
        payload["blocks"]["mandatory"][0]["bonus"] = 1
        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(payload, build_json_schema(rubric))

    def test_unknown_severity_is_rejected(self, rubric):
        payload = make_score_payload()
        payload["triggers"]["lexicon_hits"][0]["severity"] = "extreme"
        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(payload, build_json_schema(rubric))
