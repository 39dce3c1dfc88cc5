"""
Shared fixtures: an in-memory configuration, sample transcripts and a scorer
payload that satisfies the schema compiled from the test rubric.
"""

import copy

import pytest

from callaudit.core.config import config_from_dict
from callaudit.core.models import Segment, Transcript
from callaudit.services.db import init_db
from callaudit.services.rubric import rubric_from_config


RAW_CONFIG = {
    "db_path": "callaudit.sqlite",
    "input_dir": "incoming",
    "processed_dir": "processed",
    "failed_dir": "failed",
    "transcription": {"model": "gpt-4o-mini-transcribe", "fallback_model": "whisper-1"},
    "scoring": {"model": "gpt-4o-2024-08-06", "max_retries": 0, "retry_sleep_sec": 0},
    "audio_metrics": {"ffmpeg_path": "ffmpeg", "min_silence_ms": 400},
    "lexicon_triggers": {
        "enable": True,
        "categories": {
            "profanity": {"inline": ["damn", "sh*t"]},
            "buying_signals": {"inline": ["how much"]},
        },
    },
    "rubric": {
        "name": "Test Rubric",
        "mandatory": [
            {"id": "greeting", "title": "Greeting", "max": 2},
            {"id": "purpose", "title": "Purpose stated", "max": 2},
        ],
        "general": [
            {"id": "listening", "title": "Active listening", "max": 3},
            {"id": "closing", "title": "Closing", "max": 2},
        ],
        "ethics": [
            {"id": "threats", "title": "Threats", "fatal": True},
            {"id": "rudeness", "title": "Rudeness", "fatal": False},
        ],
    },
    "ethics_penalties": {"non_fatal_deduction": 1.0, "clamp_min": 0.0},
    "webhook": {"enabled": False},
    "logging": {"enabled": False},
}


@pytest.fixture
def raw_config():
    return copy.deepcopy(RAW_CONFIG)


@pytest.fixture
def app_config(tmp_path, raw_config):
    return config_from_dict(raw_config, tmp_path)


@pytest.fixture
def rubric(app_config):
    return rubric_from_config(app_config.rubric)


@pytest.fixture
def db_conn(app_config):
    conn = init_db(app_config.db_path)
    yield conn
    conn.close()


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "call.wav"
    path.write_bytes(b"RIFF0000WAVEfmt ")
    return path


def make_two_speaker_transcript() -> Transcript:
    """A 60 second call, speakers untagged (client first, then alternating)."""
    segments = [
        Segment(0.0, 8.0, "Hello? Who is calling?", avg_logprob=-0.1),
        Segment(8.5, 20.0, "Good morning, this is Anna from the billing team.", avg_logprob=-0.2),
        Segment(21.0, 32.0, "Oh damn, not this again. What do you want?", avg_logprob=-0.3),
        Segment(33.0, 47.0, "I am calling about the open invoice from March.", avg_logprob=-0.2),
        Segment(48.0, 60.0, "Fine. How much is it exactly?", avg_logprob=-0.2),
    ]
    return Transcript.from_segments(
        text=" ".join(s.text for s in segments),
        language="en",
        duration=60.0,
        segments=segments,
    )


@pytest.fixture
def transcript():
    return make_two_speaker_transcript()


def make_score_payload(final_score=8.0, ethics=None):
    return {
        "call_meta": {
            "call_type": "ptp",
            "language": "en",
            "duration_sec": 60.0,
            "agent_name": "Anna",
            "client_name": "Not stated",
        },
        "blocks": {
            "mandatory": [
                {
                    "id": "greeting",
                    "title": "Greeting",
                    "max": 2,
                    "score": 2,
                    "evidence": [{"t": 8.5, "text": "Good morning, this is Anna"}],
                    "comment": "Clear greeting and introduction.",
                },
                {
                    "id": "purpose",
                    "title": "Purpose stated",
                    "max": 2,
                    "score": 1,
                    "evidence": [{"t": 33.0, "text": "calling about the open invoice"}],
                    "comment": "Purpose stated late.",
                },
            ],
            "general": [
                {
                    "id": "listening",
                    "title": "Active listening",
                    "max": 3,
                    "score": 1,
                    "evidence": [],
                    "comment": "Ignored the client's frustration.",
                },
                {
                    "id": "closing",
                    "title": "Closing",
                    "max": 2,
                    "score": 2,
                    "evidence": [{"t": 48.0, "text": "How much is it exactly?"}],
                    "comment": "Client engaged on the amount.",
                },
            ],
            "ethics": ethics
            if ethics is not None
            else [
                {"id": "threats", "title": "Threats", "violation": False, "timestamps": [], "comment": ""},
                {"id": "rudeness", "title": "Rudeness", "violation": False, "timestamps": [], "comment": ""},
            ],
        },
        "triggers": {
            "lexicon_hits": [
                {
                    "type": "profanity",
                    "term": "damn",
                    "t": 21.0,
                    "speaker": "client",
                    "context": "Oh damn, not this again.",
                    "severity": "medium",
                }
            ],
            "audio_events": [],
        },
        "scores": {"mandatory_avg": 0.75, "general_avg": 0.6, "ethics_flag": False, "final_score": final_score},
        "recommendations": [
            {"when": "Client is frustrated", "tip": "Acknowledge the emotion first", "example": "I understand."}
        ],
        "diagnostics": {
            "transcript_confidence": 0.82,
            "audio_lufs": -21.5,
            "agent_talk_ratio": 0.42,
            "overlap_ratio": 0.0,
            "avg_response_latency_sec": 0.8,
        },
    }


@pytest.fixture
def score_payload():
    return make_score_payload()
