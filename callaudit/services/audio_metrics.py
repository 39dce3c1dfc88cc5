from __future__ import annotations

import logging
import re
import statistics
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from callaudit.core.errors import MetricsDegraded
from callaudit.core.models import Segment, Transcript
from callaudit.core.speakers import AGENT, attribute_speakers

logger = logging.getLogger(__name__)

T = TypeVar("T")

LUFS_RE = re.compile(r"I:\s+(-?\d+(?:\.\d+)?)\s+LUFS")
RMS_RE = re.compile(r"RMS level dB:\s+(-?\d+(?:\.\d+)?)")
PEAK_RE = re.compile(r"Peak level dB:\s+(-?\d+(?:\.\d+)?)")
SILENCE_START_RE = re.compile(r"silence_start:\s*(-?\d+(?:\.\d+)?)")
SILENCE_END_RE = re.compile(r"silence_end:\s*(-?\d+(?:\.\d+)?)")
FRAME_TIME_RE = re.compile(r"pts_time:(-?\d+(?:\.\d+)?)")
FRAME_RMS_RE = re.compile(r"lavfi\.astats\.Overall\.RMS_level=(-?\d+(?:\.\d+)?|-inf)")

ANALYSIS_RATE = 16000


class AudioMetricsAnalyzer:
    """Signal and conversation metrics for one recording.

    Loudness, RMS, silence and spike detection each run as a separate ffmpeg
    invocation. A failing measurement is logged and replaced by its default
    so the rest of the metrics are still reported.
    """

    def __init__(self, cfg_audio: Mapping[str, Any]) -> None:
        self.cfg = cfg_audio
        self.ffmpeg_path = cfg_audio.get("ffmpeg_path", "ffmpeg")
        self.timeout = float(cfg_audio.get("timeout_sec", 120))

    def analyze(self, audio_path: str, transcript: Transcript) -> Dict[str, Any]:
        if not Path(audio_path).exists():
            raise FileNotFoundError(f"Audio file not found: {audio_path}")

        rms = _degrade("rms", {"avg": 0.0, "peak": 0.0}, lambda: self.measure_rms(audio_path))
        metrics: Dict[str, Any] = {
            "lufs": _degrade("lufs", 0.0, lambda: self.measure_lufs(audio_path)),
            "rms_avg_db": rms["avg"],
            "rms_peak_db": rms["peak"],
            "silence": _degrade(
                "silence", [], lambda: self.detect_silence(audio_path, transcript.duration)
            ),
            "audio_events": _degrade(
                "peaks", [], lambda: self.detect_peaks(audio_path, transcript.segments)
            ),
        }
        metrics.update(derived_metrics(transcript))
        return metrics

    def _ffmpeg(self, metric: str, audio_path: str, filter_args: List[str]) -> str:
        cmd = [self.ffmpeg_path, "-hide_banner", "-nostats", "-i", audio_path, *filter_args, "-f", "null", "-"]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise MetricsDegraded(metric, exc) from exc
        if proc.returncode != 0:
            raise MetricsDegraded(metric, f"ffmpeg exited with {proc.returncode}")
        # ffmpeg prints filter reports on stderr; ametadata file=- goes to stdout
        return (proc.stdout or "") + "\n" + (proc.stderr or "")

    def measure_lufs(self, audio_path: str) -> float:
        output = self._ffmpeg("lufs", audio_path, ["-filter_complex", "ebur128"])
        matches = LUFS_RE.findall(output)
        if not matches:
            raise MetricsDegraded("lufs", "no integrated loudness in ffmpeg output")
        # the summary block comes last
        return float(matches[-1])

    def measure_rms(self, audio_path: str) -> Dict[str, float]:
        output = self._ffmpeg("rms", audio_path, ["-af", "astats"])
        overall = output.split("Overall", 1)[-1]
        rms_match = RMS_RE.search(overall)
        peak_match = PEAK_RE.search(overall)
        if not rms_match and not peak_match:
            raise MetricsDegraded("rms", "no RMS/peak levels in ffmpeg output")
        return {
            "avg": float(rms_match.group(1)) if rms_match else 0.0,
            "peak": float(peak_match.group(1)) if peak_match else 0.0,
        }

    def detect_silence(self, audio_path: str, duration: float = 0.0) -> List[Dict[str, float]]:
        min_gap = float(self.cfg.get("min_silence_ms", 400)) / 1000
        noise = self.cfg.get("silence_noise_db", -50)
        output = self._ffmpeg("silence", audio_path, ["-af", f"silencedetect=noise={noise}dB:d={min_gap}"])
        return parse_silence(output, duration)

    def detect_peaks(self, audio_path: str, segments: tuple[Segment, ...] = ()) -> List[Dict[str, Any]]:
        window_ms = int(self.cfg.get("peak_window_ms", 500))
        samples = max(1, ANALYSIS_RATE * window_ms // 1000)
        chain = (
            f"aresample={ANALYSIS_RATE},asetnsamples=n={samples},"
            "astats=metadata=1:reset=1,"
            "ametadata=mode=print:key=lavfi.astats.Overall.RMS_level:file=-"
        )
        output = self._ffmpeg("peaks", audio_path, ["-af", chain])
        frames = parse_rms_frames(output)
        threshold = float(self.cfg.get("db_spike_threshold_db", 9.0))
        return find_spikes(frames, threshold, window_ms / 1000, segments)


def _degrade(metric: str, default: T, measure: Callable[[], T]) -> T:
    try:
        return measure()
    except MetricsDegraded as exc:
        logger.warning("Audio metric %s degraded (%s), using %r", metric, exc.cause, default)
        return default


def parse_silence(output: str, duration: float = 0.0) -> List[Dict[str, float]]:
    starts = [float(v) for v in SILENCE_START_RE.findall(output)]
    ends = [float(v) for v in SILENCE_END_RE.findall(output)]
    silences = []
    for i, start in enumerate(starts):
        if i < len(ends):
            end = ends[i]
        else:
            # silence running to the end of the file has no silence_end line
            end = duration if duration > start else start
        silences.append({"start": start, "end": end})
    return silences


def parse_rms_frames(output: str) -> List[tuple[float, float]]:
    frames = []
    current_t: Optional[float] = None
    for line in output.splitlines():
        t_match = FRAME_TIME_RE.search(line)
        if t_match:
            current_t = float(t_match.group(1))
            continue
        rms_match = FRAME_RMS_RE.search(line)
        if rms_match and current_t is not None and rms_match.group(1) != "-inf":
            frames.append((current_t, float(rms_match.group(1))))
            current_t = None
    return frames


def find_spikes(
    frames: List[tuple[float, float]],
    threshold_db: float,
    window_sec: float,
    segments: tuple[Segment, ...] = (),
) -> List[Dict[str, Any]]:
    """Merge consecutive windows louder than the median RMS by ``threshold_db``."""
    if not frames:
        return []
    baseline = statistics.median(level for _, level in frames)
    events: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None
    for t, level in frames:
        delta = level - baseline
        if delta >= threshold_db:
            if current is not None and t <= current["t_end"] + 1e-6:
                current["t_end"] = t + window_sec
                current["delta_db"] = max(current["delta_db"], round(delta, 2))
            else:
                current = {"type": "db_spike", "delta_db": round(delta, 2), "t_start": t, "t_end": t + window_sec}
                events.append(current)
        else:
            current = None

    speakers = attribute_speakers(segments)
    for event in events:
        event["speaker"] = _speaker_at(event["t_start"], segments, speakers)
    return events


def _speaker_at(t: float, segments: tuple[Segment, ...], speakers: List[str]) -> str:
    for seg, speaker in zip(segments, speakers):
        if seg.start <= t <= seg.end:
            return speaker
    return "unknown"


def derived_metrics(transcript: Transcript) -> Dict[str, float]:
    segments = transcript.segments
    speakers = attribute_speakers(segments)

    total = transcript.duration or (segments[-1].end if segments else 0.0)
    agent_time = sum(s.end - s.start for s, who in zip(segments, speakers) if who == AGENT)
    talk_ratio = agent_time / total if total > 0 else 0.0

    latencies = []
    for i in range(1, len(segments)):
        if speakers[i] != speakers[i - 1]:
            gap = segments[i].start - segments[i - 1].end
            if gap > 0:
                latencies.append(gap)

    return {
        "agent_talk_ratio": talk_ratio,
        # needs real diarization to measure
        "overlap_ratio": 0.0,
        "avg_response_latency_sec": sum(latencies) / len(latencies) if latencies else 0.0,
    }
