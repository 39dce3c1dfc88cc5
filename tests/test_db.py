"""
Job persistence: compare-and-set transitions and atomic report storage.
"""

import pytest

from callaudit.core.errors import JobNotFound, JobStateError
from callaudit.core.models import JobStatus, Report
from callaudit.services.db import (
    create_job,
    find_job_by_hash,
    find_report,
    get_job,
    init_db,
    list_jobs,
    mark_failed,
    save_report_and_finish,
    transition_status,
)


def _walk_to(conn, job_id, target):
    order = [
        JobStatus.UPLOADED,
        JobStatus.TRANSCRIBING,
        JobStatus.ANALYZING_METRICS,
        JobStatus.DETECTING_TRIGGERS,
        JobStatus.BUILDING_RUBRIC,
        JobStatus.SCORING,
        JobStatus.ASSEMBLING,
    ]
    for current, new in zip(order, order[1:]):
        transition_status(conn, job_id, current, new)
        if new is target:
            return


def _report(final_score=7.0, ethics_flag=True):
    return Report(
        result={"call_meta": {"call_type": "ptp"}, "blocks": {}},
        scores={"mandatory_avg": 0.5, "general_avg": 0.6, "ethics_flag": ethics_flag, "final_score": final_score},
        summary={"total_criteria": 0},
    )


class TestJobs:
    def test_create_and_get(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav", lang="en", audio_sha256="abc")
        stored = get_job(db_conn, job.id)
        assert stored.status is JobStatus.UPLOADED
        assert stored.lang == "en"
        assert stored.audio_sha256 == "abc"

    def test_unknown_job(self, db_conn):
        with pytest.raises(JobNotFound):
            get_job(db_conn, "missing")

    def test_find_by_hash_filters_on_status(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav", audio_sha256="abc")
        assert find_job_by_hash(db_conn, "abc", JobStatus.DONE) is None
        assert find_job_by_hash(db_conn, "abc", JobStatus.UPLOADED).id == job.id

    def test_list_jobs_newest_first(self, db_conn):
        first = create_job(db_conn, "/tmp/a.wav")
        second = create_job(db_conn, "/tmp/b.wav")
        assert [j.id for j in list_jobs(db_conn)] == [second.id, first.id]

    def test_init_db_is_idempotent(self, app_config, db_conn):
        create_job(db_conn, "/tmp/a.wav")
        again = init_db(app_config.db_path)
        try:
            assert len(list_jobs(again)) == 1
        finally:
            again.close()


class TestTransitions:
    def test_forward_transition(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        transition_status(db_conn, job.id, JobStatus.UPLOADED, JobStatus.TRANSCRIBING)
        assert get_job(db_conn, job.id).status is JobStatus.TRANSCRIBING

    def test_stale_expected_status_is_rejected(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        _walk_to(db_conn, job.id, JobStatus.SCORING)
        with pytest.raises(JobStateError):
            transition_status(db_conn, job.id, JobStatus.UPLOADED, JobStatus.TRANSCRIBING)
        assert get_job(db_conn, job.id).status is JobStatus.SCORING

    def test_illegal_step_is_rejected(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        with pytest.raises(JobStateError, match="illegal"):
            transition_status(db_conn, job.id, JobStatus.UPLOADED, JobStatus.SCORING)
        assert get_job(db_conn, job.id).status is JobStatus.UPLOADED

    def test_mark_failed_only_touches_running_jobs(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        assert mark_failed(db_conn, job.id, "scoring: boom") is True
        assert mark_failed(db_conn, job.id, "again") is False
        stored = get_job(db_conn, job.id)
        assert stored.status is JobStatus.FAILED
        assert stored.error == "scoring: boom"

    def test_failed_job_cannot_continue(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        _walk_to(db_conn, job.id, JobStatus.ANALYZING_METRICS)
        mark_failed(db_conn, job.id, "cancelled")
        with pytest.raises(JobStateError):
            transition_status(db_conn, job.id, JobStatus.ANALYZING_METRICS, JobStatus.DETECTING_TRIGGERS)


class TestReports:
    def test_report_saved_with_done(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        _walk_to(db_conn, job.id, JobStatus.ASSEMBLING)
        save_report_and_finish(db_conn, job.id, _report())

        assert get_job(db_conn, job.id).status is JobStatus.DONE
        row = find_report(db_conn, job.id)
        assert row["final_score"] == 7.0
        assert row["ethics_flag"] is True
        assert row["json"]["scores"]["final_score"] == 7.0

    def test_report_rejected_unless_assembling(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        _walk_to(db_conn, job.id, JobStatus.SCORING)
        with pytest.raises(JobStateError):
            save_report_and_finish(db_conn, job.id, _report())
        assert find_report(db_conn, job.id) is None
        assert get_job(db_conn, job.id).status is JobStatus.SCORING

    def test_report_for_failed_job_is_discarded(self, db_conn):
        job = create_job(db_conn, "/tmp/a.wav")
        _walk_to(db_conn, job.id, JobStatus.ASSEMBLING)
        mark_failed(db_conn, job.id, "cancelled")
        with pytest.raises(JobStateError):
            save_report_and_finish(db_conn, job.id, _report())
        assert find_report(db_conn, job.id) is None
