from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import openai
from openai import OpenAI

from callaudit.core.errors import TranscriptionFailed
from callaudit.core.models import Segment, Transcript

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini-transcribe"
DEFAULT_FALLBACK_MODEL = "whisper-1"

# status codes the service uses to refuse a model/format combination
_REJECTION_CODES = {400, 404, 422}


class ModelRejected(Exception):
    pass


class Transcriber:
    def __init__(self, cfg_transcription: Mapping[str, Any], client: Optional[OpenAI] = None) -> None:
        self.cfg = cfg_transcription
        self.provider = (cfg_transcription.get("provider") or "openai").lower()
        self._client = client

    def transcribe(self, audio_path: str, language: str = "auto") -> Transcript:
        path = Path(audio_path)
        if not path.exists():
            raise TranscriptionFailed(f"audio file not found: {audio_path}")

        model = self.cfg.get("model") or DEFAULT_MODEL
        fallback = self.cfg.get("fallback_model") or DEFAULT_FALLBACK_MODEL
        try:
            return self._transcribe_with(path, model, language)
        except ModelRejected as exc:
            if fallback == model:
                raise TranscriptionFailed(exc) from exc
            logger.warning("Model %s rejected (%s), retrying with %s", model, exc, fallback)
        try:
            return self._transcribe_with(path, fallback, language)
        except ModelRejected as exc:
            raise TranscriptionFailed(exc) from exc

    def _transcribe_with(self, path: Path, model: str, language: str) -> Transcript:
        if self.provider in {"faster_whisper", "local"}:
            return self._transcribe_faster_whisper(path, model, language)
        return self._transcribe_openai(path, model, language)

    def _client_or_default(self) -> OpenAI:
        if self._client is None:
            # the fallback model is the only retry
            self._client = OpenAI(timeout=float(self.cfg.get("timeout_sec", 300)), max_retries=0)
        return self._client

    def _transcribe_openai(self, path: Path, model: str, language: str) -> Transcript:
        client = self._client_or_default()
        kwargs: Dict[str, Any] = {
            "model": model,
            "response_format": self.cfg.get("response_format", "verbose_json"),
            "timestamp_granularities": ["segment"],
        }
        if language and language != "auto":
            kwargs["language"] = language
        if self.cfg.get("prompt"):
            kwargs["prompt"] = self.cfg["prompt"]

        try:
            with path.open("rb") as audio_file:
                response = client.audio.transcriptions.create(file=audio_file, **kwargs)
        except openai.APIStatusError as exc:
            if exc.status_code in _REJECTION_CODES:
                raise ModelRejected(f"{model}: {exc}") from exc
            raise TranscriptionFailed(exc) from exc
        except openai.OpenAIError as exc:
            raise TranscriptionFailed(exc) from exc

        return parse_verbose_response(_as_dict(response), language)

    def _transcribe_faster_whisper(self, path: Path, model_name: str, language: str) -> Transcript:
        from faster_whisper import WhisperModel

        try:
            model = WhisperModel(
                model_name,
                device=self.cfg.get("device", "cpu"),
                compute_type=self.cfg.get("compute_type", "int8"),
            )
        except (ValueError, RuntimeError, OSError) as exc:
            raise ModelRejected(f"{model_name}: {exc}") from exc

        try:
            raw_segments, info = model.transcribe(
                str(path),
                language=None if language == "auto" else language,
                initial_prompt=self.cfg.get("prompt") or None,
            )
            segments = [
                Segment(
                    start=float(seg.start),
                    end=float(seg.end),
                    text=seg.text.strip(),
                    avg_logprob=float(seg.avg_logprob),
                )
                for seg in raw_segments
            ]
        except (RuntimeError, OSError, ValueError) as exc:
            raise TranscriptionFailed(exc) from exc

        return Transcript.from_segments(
            text=" ".join(s.text for s in segments).strip(),
            language=getattr(info, "language", None) or language,
            duration=float(getattr(info, "duration", 0.0) or 0.0),
            segments=segments,
        )


def parse_verbose_response(data: Dict[str, Any], language_hint: str = "auto") -> Transcript:
    segments: List[Segment] = [Segment.from_dict(_as_dict(s)) for s in data.get("segments") or []]
    return Transcript.from_segments(
        text=(data.get("text") or "").strip(),
        language=data.get("language") or language_hint,
        duration=float(data.get("duration") or 0.0),
        segments=segments,
    )


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, str):
        return {"text": obj}
    return {"text": getattr(obj, "text", str(obj))}
