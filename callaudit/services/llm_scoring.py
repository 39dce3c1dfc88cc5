from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

import jsonschema
from openai import OpenAI

from callaudit.core.errors import SchemaViolation, ScoringFailed
from callaudit.core.models import Rubric, ScoreResult, Transcript, TriggerEvent
from callaudit.core.speakers import attribute_speakers
from callaudit.services.rubric import build_json_schema

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 110


SYSTEM_PROMPT = """
You are a professional auditor of recorded phone calls between a company agent and a client.

Your tasks:
1. Identify the names of the agent and the client from the transcript.
   - The agent usually introduces themselves at the start ("My name is...", "This is ...").
   - The client is the person being addressed or who introduces themselves.
   - If a name is never mentioned, use "Not stated".
2. Score the call against every rubric criterion (mandatory, general, ethics).
   - For each criterion give a score from 0 to max and quote the transcript with its timestamp.
   - For each ethics criterion state whether it was violated and at which timestamps.
3. Find EVERY instance of rudeness, profanity or insults:
   - For each give the type, the exact word or phrase, the timestamp and the speaker.
   - Add context: a quote of about 50 characters around the incident.
   - Rate severity: low (mild rudeness), medium (insolence), high (profanity, threats).
4. Classify the call type.
5. Write recommendations for criteria with low scores.
6. Fill in diagnostics from the audio metrics provided.

Requirements:
- Quotes must be exact excerpts from the transcript (max 180 characters).
- Timestamps are seconds (float).
- Always fill context and severity for triggers.lexicon_hits.
- Comments are short, concrete and backed by evidence.
- If there is no evidence for a criterion, score it low.
- Follow the JSON schema strictly.
""".strip()


def _client_for_provider(cfg_scoring: Mapping[str, Any]) -> OpenAI:
    provider = (cfg_scoring.get("provider") or "openai").lower()
    timeout = float(cfg_scoring.get("timeout_sec", DEFAULT_TIMEOUT_SEC))
    if provider == "lmstudio":
        base_url = cfg_scoring.get("base_url") or "http://localhost:1234/v1"
        api_key = os.getenv("LM_STUDIO_API_KEY", "lmstudio")
        return OpenAI(base_url=base_url, api_key=api_key, timeout=timeout, max_retries=0)
    # retries are counted by Scorer against its own deadline
    return OpenAI(timeout=timeout, max_retries=0)


def _extract_json(text: str) -> Optional[str]:
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        return match.group(0)
    return None


def format_transcript(transcript: Transcript) -> str:
    lines = [
        f"Language: {transcript.language}",
        f"Duration: {round(transcript.duration, 2)} sec",
        "",
    ]
    speakers = attribute_speakers(transcript.segments)
    for seg, speaker in zip(transcript.segments, speakers):
        lines.append(f"[{seg.start:.2f}-{seg.end:.2f}] {speaker}: {seg.text}")
    if not transcript.segments and transcript.text:
        lines.append(transcript.text)
    return "\n".join(lines)


def build_user_content(
    transcript: Transcript,
    rubric: Rubric,
    triggers: Sequence[TriggerEvent],
    metrics: Mapping[str, Any],
    max_chars: int = 20000,
) -> str:
    text = format_transcript(transcript)
    if len(text) > max_chars:
        text = text[:max_chars]

    def dump(obj: Any) -> str:
        return json.dumps(obj, ensure_ascii=False, indent=2)

    return "\n\n".join(
        [
            "# TRANSCRIPT\n" + text,
            "# RUBRIC\n" + dump(rubric.to_dict()),
            "# PRELIMINARY TRIGGERS\n" + dump([t.to_dict() for t in triggers]),
            "# AUDIO METRICS\n" + dump(dict(metrics)),
            "Analyse the call and fill in the evaluation schema.",
        ]
    )


def validate_payload(payload: Any, schema: Dict[str, Any]) -> None:
    validator = jsonschema.Draft7Validator(schema)
    errors: List[str] = []
    for error in validator.iter_errors(payload):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")
    if errors:
        raise SchemaViolation(errors)


class Scorer:
    def __init__(self, cfg_scoring: Mapping[str, Any], client: Optional[OpenAI] = None) -> None:
        self.cfg = cfg_scoring
        self.provider = (cfg_scoring.get("provider") or "openai").lower()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = _client_for_provider(self.cfg)
        return self._client

    def score(
        self,
        transcript: Transcript,
        rubric: Rubric,
        triggers: Sequence[TriggerEvent] = (),
        metrics: Optional[Mapping[str, Any]] = None,
        schema: Optional[Dict[str, Any]] = None,
    ) -> ScoreResult:
        if schema is None:
            schema = build_json_schema(rubric)
        user_content = build_user_content(
            transcript,
            rubric,
            triggers,
            metrics or {},
            max_chars=int(self.cfg.get("max_transcript_chars", 20000)),
        )

        max_retries = int(self.cfg.get("max_retries", 2))
        retry_sleep = float(self.cfg.get("retry_sleep_sec", 1))
        # timeout_sec bounds the whole call, retries included
        deadline = time.monotonic() + float(self.cfg.get("timeout_sec", DEFAULT_TIMEOUT_SEC))
        last_error: Optional[Exception] = None
        attempts = 0

        for attempt in range(max_retries + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Scoring deadline reached after %d attempt(s)", attempt)
                break
            attempts += 1
            try:
                raw = self._request(SYSTEM_PROMPT, user_content, schema, timeout=remaining)
                payload = self._parse(raw)
                validate_payload(payload, schema)
                return ScoreResult.from_dict(payload)
            except Exception as exc:
                last_error = exc
                logger.warning("Scoring attempt %d/%d failed: %s", attempt + 1, max_retries + 1, exc)
                if attempt < max_retries:
                    time.sleep(min(retry_sleep, max(deadline - time.monotonic(), 0.0)))

        if isinstance(last_error, SchemaViolation):
            raise last_error
        if last_error is None:
            raise ScoringFailed("deadline reached before the first attempt")
        raise ScoringFailed(f"gave up after {attempts} attempt(s), last error: {last_error}") from last_error

    def _request(self, sys_prompt: str, user_content: str, schema: Dict[str, Any], timeout: float) -> str:
        model = self.cfg.get("model", "gpt-4o-2024-08-06")
        temperature = float(self.cfg.get("temperature", 0.2))
        max_tokens = int(self.cfg.get("max_output_tokens", 4000))

        if self.provider == "lmstudio":
            response = self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": sys_prompt},
                    {"role": "user", "content": user_content},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "CallScore", "strict": True, "schema": schema},
                },
            )
            return response.choices[0].message.content or ""

        response = self.client.responses.create(
            model=model,
            input=[
                {"role": "system", "content": [{"type": "input_text", "text": sys_prompt}]},
                {"role": "user", "content": [{"type": "input_text", "text": user_content}]},
            ],
            temperature=temperature,
            max_output_tokens=max_tokens,
            timeout=timeout,
            text={
                "format": {
                    "type": "json_schema",
                    "name": "CallScore",
                    "schema": schema,
                    "strict": True,
                }
            },
        )
        return response.output_text

    @staticmethod
    def _parse(raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            recovered = _extract_json(raw)
            if not recovered:
                raise
            return json.loads(recovered)
