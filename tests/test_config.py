"""
Configuration loading and the command line entry point.
"""

import json

import pytest
import yaml

from callaudit.app.main import main
from callaudit.core.config import config_from_dict, load_config
from callaudit.core.errors import ConfigError
from callaudit.services.db import create_job, init_db
from tests.conftest import RAW_CONFIG


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(RAW_CONFIG), encoding="utf-8")
    return path


class TestConfig:
    def test_paths_resolve_against_config_dir(self, config_file, tmp_path):
        cfg = load_config(config_file)
        assert cfg.db_path == tmp_path / "callaudit.sqlite"
        assert cfg.input_dir == tmp_path / "incoming"
        assert cfg.scoring["max_retries"] == 0

    def test_sections_are_read_only(self, app_config):
        with pytest.raises(TypeError):
            app_config.scoring["model"] = "other"
        assert isinstance(app_config.rubric["mandatory"], tuple)

    def test_db_path_is_required(self, tmp_path):
        with pytest.raises(ConfigError, match="db_path"):
            config_from_dict({}, tmp_path)

    def test_section_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="scoring"):
            config_from_dict({"db_path": "x.sqlite", "scoring": ["not", "a", "mapping"]}, tmp_path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_audio_extensions_lowercased(self, tmp_path):
        cfg = config_from_dict({"db_path": "x.sqlite", "audio_extensions": [".MP3", ".Wav"]}, tmp_path)
        assert cfg.audio_extensions == (".mp3", ".wav")


class TestCli:
    def test_status_of_existing_job(self, config_file, tmp_path, capsys):
        conn = init_db(tmp_path / "callaudit.sqlite")
        job = create_job(conn, "/tmp/a.wav")
        conn.close()

        assert main(["--config", str(config_file), "--mode", "status", "--job-id", job.id]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["id"] == job.id
        assert out["status"] == "uploaded"

    def test_unknown_job(self, config_file, capsys):
        assert main(["--config", str(config_file), "--mode", "report", "--job-id", "missing"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_report_missing_for_unfinished_job(self, config_file, tmp_path, capsys):
        conn = init_db(tmp_path / "callaudit.sqlite")
        job = create_job(conn, "/tmp/a.wav")
        conn.close()

        assert main(["--config", str(config_file), "--mode", "report", "--job-id", job.id]) == 1
        assert "No report" in capsys.readouterr().err

    def test_batch_with_empty_inbox(self, config_file, capsys):
        assert main(["--config", str(config_file), "--mode", "batch"]) == 0
        assert "0 jobs" in capsys.readouterr().out
