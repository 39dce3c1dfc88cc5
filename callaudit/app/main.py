from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from callaudit.core.config import load_config
from callaudit.core.errors import CallAuditError, PipelineFailed
from callaudit.core.logging_setup import setup_logging
from callaudit.core.utils import file_sha256
from callaudit.pipelines.batch import run_batch
from callaudit.pipelines.orchestrator import build_orchestrator
from callaudit.pipelines.watcher import run_watcher
from callaudit.services.db import find_job, find_report, init_db


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="callaudit", description="Audit recorded calls against a rubric.")
    parser.add_argument("--config", default="config.yaml", help="path to config.yaml")
    parser.add_argument("--mode", choices=["run", "batch", "watch", "status", "report"], default="watch")
    parser.add_argument("--file", help="audio file for --mode run")
    parser.add_argument("--lang", default="auto", help="language hint (auto or ISO code)")
    parser.add_argument("--rubric", help="custom rubric spreadsheet (.xlsx)")
    parser.add_argument("--webhook", help="URL notified when the job finishes")
    parser.add_argument("--job-id", help="job id for --mode status/report")
    parser.add_argument("--workers", type=int, help="parallel jobs for --mode batch")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    cfg = load_config(Path(args.config))
    setup_logging(cfg.logging, cfg.base_dir)

    if args.mode == "batch":
        jobs = run_batch(cfg, workers=args.workers)
        for job in jobs:
            print(f"{job.id}\t{job.status.value}\t{Path(job.audio_path).name}")
        print(f"Batch complete ({len(jobs)} jobs).")
        return 0

    db_conn = init_db(cfg.db_path)
    try:
        if args.mode == "watch":
            run_watcher(cfg, build_orchestrator(cfg, db_conn))
            return 0

        if args.mode == "run":
            if not args.file:
                parser.error("--mode run requires --file")
            audio = Path(args.file)
            if not audio.exists():
                parser.error(f"audio file not found: {audio}")
            orchestrator = build_orchestrator(cfg, db_conn)
            job = orchestrator.submit(
                str(audio.resolve()),
                lang=args.lang,
                rubric_path=args.rubric,
                webhook_url=args.webhook,
                audio_sha256=file_sha256(audio),
            )
            print(f"Job: {job.id}")
            try:
                report = orchestrator.run(job.id)
            except PipelineFailed as exc:
                print(f"Job {job.id} failed at {exc.stage}: {exc.cause}", file=sys.stderr)
                return 1
            print(report.to_json())
            return 0

        if not args.job_id:
            parser.error(f"--mode {args.mode} requires --job-id")
        job = find_job(db_conn, args.job_id)
        if job is None:
            print(f"Job not found: {args.job_id}", file=sys.stderr)
            return 1
        if args.mode == "status":
            print(json.dumps({"id": job.id, "status": job.status.value, "updated_at": job.updated_at, "error": job.error}))
            return 0

        report_row = find_report(db_conn, job.id)
        if report_row is None:
            print(f"No report for job {job.id} (status: {job.status.value})", file=sys.stderr)
            return 1
        print(json.dumps(report_row["json"], ensure_ascii=False, indent=2, sort_keys=True))
        return 0
    except CallAuditError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        db_conn.close()


if __name__ == "__main__":
    sys.exit(main())
