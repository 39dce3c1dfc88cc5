from __future__ import annotations

import logging
import sqlite3
import time
from typing import Callable, Optional, TypeVar

from callaudit.core.config import AppConfig
from callaudit.core.errors import PipelineFailed
from callaudit.core.models import Job, JobStatus, Report
from callaudit.services.audio_metrics import AudioMetricsAnalyzer
from callaudit.services.db import create_job, get_job, mark_failed, save_report_and_finish, transition_status
from callaudit.services.llm_scoring import Scorer
from callaudit.services.report import ReportAssembler
from callaudit.services.rubric import RubricBuilder
from callaudit.services.stt_whisper import Transcriber
from callaudit.services.triggers import TriggerDetector
from callaudit.services.webhook import WebhookNotifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOTAL_STEPS = 6


class PipelineOrchestrator:
    """Runs one job through every stage, persisting each status change first.

    ``uploaded -> transcribing -> analyzing_metrics -> detecting_triggers ->
    building_rubric -> scoring -> assembling -> done``; any stage error moves
    the job to ``failed`` and is re-raised as PipelineFailed.
    """

    def __init__(
        self,
        cfg: AppConfig,
        conn: sqlite3.Connection,
        transcriber: Transcriber,
        analyzer: AudioMetricsAnalyzer,
        detector: TriggerDetector,
        rubric_builder: RubricBuilder,
        scorer: Scorer,
        notifier: Optional[WebhookNotifier] = None,
    ) -> None:
        self.cfg = cfg
        self.conn = conn
        self.transcriber = transcriber
        self.analyzer = analyzer
        self.detector = detector
        self.rubric_builder = rubric_builder
        self.scorer = scorer
        self.notifier = notifier

    def submit(
        self,
        audio_path: str,
        lang: str = "auto",
        rubric_path: Optional[str] = None,
        webhook_url: Optional[str] = None,
        audio_sha256: str = "",
    ) -> Job:
        job = create_job(self.conn, audio_path, lang, rubric_path, webhook_url, audio_sha256)
        logger.info("Job created: %s (%s, lang=%s)", job.id, audio_path, job.lang)
        return job

    def run(self, job_id: str) -> Report:
        job = get_job(self.conn, job_id)
        # claims the job; a second start of the same job fails here untouched
        transition_status(self.conn, job_id, JobStatus.UPLOADED, JobStatus.TRANSCRIBING)
        status = JobStatus.TRANSCRIBING
        started = time.monotonic()
        logger.info("--- PIPELINE START %s ---", job_id)

        try:
            transcript = self._timed(
                1, "Transcription", lambda: self.transcriber.transcribe(job.audio_path, job.lang)
            )
            logger.info("Segments detected: %d", len(transcript.segments))

            status = self._advance(job_id, status, JobStatus.ANALYZING_METRICS)
            metrics = self._timed(2, "Audio metrics", lambda: self.analyzer.analyze(job.audio_path, transcript))

            status = self._advance(job_id, status, JobStatus.DETECTING_TRIGGERS)
            triggers = self._timed(3, "Trigger detection", lambda: self.detector.detect(transcript))
            logger.info("Triggers found: %d", len(triggers))

            status = self._advance(job_id, status, JobStatus.BUILDING_RUBRIC)
            rubric = self._timed(4, "Rubric", lambda: self.rubric_builder.build(job.rubric_path))
            schema = self.rubric_builder.schema(rubric)

            status = self._advance(job_id, status, JobStatus.SCORING)
            score_result = self._timed(
                5, "Scoring", lambda: self.scorer.score(transcript, rubric, triggers, metrics, schema=schema)
            )

            status = self._advance(job_id, status, JobStatus.ASSEMBLING)
            assembler = ReportAssembler.from_rubric(rubric, self.cfg.ethics_penalties, self.cfg.report)
            report = self._timed(6, "Report", lambda: assembler.assemble(score_result))
            save_report_and_finish(self.conn, job_id, report)
        except Exception as exc:
            stage = status.value
            logger.error("Pipeline for job %s failed at %s: %s", job_id, stage, exc)
            mark_failed(self.conn, job_id, f"{stage}: {exc}")
            self._notify(job_id)
            raise PipelineFailed(stage, exc) from exc

        logger.info("--- PIPELINE COMPLETED %s in %.2fs ---", job_id, time.monotonic() - started)
        logger.info(
            "Final score: %s, ethics flag: %s",
            report.scores["final_score"],
            "YES" if report.scores["ethics_flag"] else "NO",
        )
        self._notify(job_id, report)
        return report

    def _advance(self, job_id: str, current: JobStatus, new: JobStatus) -> JobStatus:
        transition_status(self.conn, job_id, current, new)
        return new

    @staticmethod
    def _timed(step: int, label: str, fn: Callable[[], T]) -> T:
        logger.info("[%d/%d] %s...", step, TOTAL_STEPS, label)
        t0 = time.monotonic()
        result = fn()
        logger.info("[%d/%d] %s completed in %.2fs", step, TOTAL_STEPS, label, time.monotonic() - t0)
        return result

    def _notify(self, job_id: str, report: Optional[Report] = None) -> None:
        if self.notifier is None:
            return
        job = get_job(self.conn, job_id)
        self.notifier.notify(job, report)


def build_orchestrator(cfg: AppConfig, conn: sqlite3.Connection) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        cfg,
        conn,
        transcriber=Transcriber(cfg.transcription),
        analyzer=AudioMetricsAnalyzer(cfg.audio_metrics),
        detector=TriggerDetector(cfg.lexicon_triggers, cfg.base_dir),
        rubric_builder=RubricBuilder(cfg.rubric),
        scorer=Scorer(cfg.scoring),
        notifier=WebhookNotifier(cfg.webhook),
    )
