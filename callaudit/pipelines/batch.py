from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional

from callaudit.core.config import AppConfig
from callaudit.core.errors import PipelineFailed
from callaudit.core.models import Job, JobStatus
from callaudit.core.utils import file_sha256, safe_move
from callaudit.pipelines.orchestrator import PipelineOrchestrator, build_orchestrator
from callaudit.services.db import find_job_by_hash, get_job, init_db, update_audio_path

logger = logging.getLogger(__name__)


def process_file(
    path: Path,
    cfg: AppConfig,
    orchestrator: PipelineOrchestrator,
    lang: str = "auto",
    rubric_path: Optional[str] = None,
) -> Optional[Job]:
    """Run one dropped audio file as a job and move it out of the inbox.

    Files already audited (a ``done`` job with the same content hash) are
    moved to ``processed_dir`` without a new run.
    """
    audio_hash = file_sha256(path)
    existing = find_job_by_hash(orchestrator.conn, audio_hash, JobStatus.DONE)
    if existing is not None:
        logger.info("%s already audited as job %s, skipping", path.name, existing.id)
        safe_move(path, cfg.processed_dir)
        return existing

    job = orchestrator.submit(str(path), lang=lang, rubric_path=rubric_path, audio_sha256=audio_hash)
    # job id prefix keeps same-named recordings apart; audio_path follows every move
    stored = safe_move(path, cfg.processed_dir, f"{job.id}_{path.name}")
    update_audio_path(orchestrator.conn, job.id, str(stored))
    try:
        orchestrator.run(job.id)
    except PipelineFailed as exc:
        logger.error("%s failed at %s: %s", path.name, exc.stage, exc.cause)
        failed = safe_move(stored, cfg.failed_dir)
        update_audio_path(orchestrator.conn, job.id, str(failed))
    return get_job(orchestrator.conn, job.id)


def run_batch(cfg: AppConfig, workers: Optional[int] = None) -> List[Job]:
    files = sorted(p for p in cfg.input_dir.glob("*") if p.suffix.lower() in cfg.audio_extensions)
    if not files:
        logger.info("No audio files in %s", cfg.input_dir)
        return []

    workers = workers or int(cfg.batch.get("workers", 1))
    if workers <= 1:
        conn = init_db(cfg.db_path)
        try:
            orchestrator = build_orchestrator(cfg, conn)
            return [job for job in (process_file(p, cfg, orchestrator) for p in files) if job]
        finally:
            conn.close()

    # one connection and orchestrator per worker thread
    local = threading.local()
    connections: List[sqlite3.Connection] = []
    lock = threading.Lock()

    def _orchestrator() -> PipelineOrchestrator:
        if not hasattr(local, "orchestrator"):
            conn = init_db(cfg.db_path)
            with lock:
                connections.append(conn)
            local.orchestrator = build_orchestrator(cfg, conn)
        return local.orchestrator

    try:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda p: process_file(p, cfg, _orchestrator()), files))
    finally:
        for conn in connections:
            conn.close()
    return [job for job in results if job]
