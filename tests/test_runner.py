import unittest
from pathlib import Path
from unittest.mock import patch

import pytest
from google.auth.exceptions import TransportError

from fieldsync.core.errors import FetchError
from fieldsync.db import models
from fieldsync.jobs.ingest import FormEquipment, FormMedia, FormSubmission, create_jobs
from fieldsync.jobs.queue import JobQueue
from fieldsync.jobs.runner import DrainReport, JobRunner
from fieldsync.services.storage import ArtifactStorageError, StorageClient


class FakeFetcher:
    def __init__(self, medias=None, pdf=b"%PDF-1.4 rapport"):
        self.medias = medias or {}
        self.pdf = pdf
        self.calls = []

    def fetch(self, form_id, data_id, media_name):
        self.calls.append((form_id, data_id, media_name))
        payload = self.medias.get(media_name)
        if isinstance(payload, Exception):
            raise payload
        if payload is None:
            raise FetchError("HTTP 404", status_code=404)
        return payload

    def fetch_pdf(self, form_id, data_id):
        self.calls.append((form_id, data_id, None))
        if isinstance(self.pdf, Exception):
            raise self.pdf
        return self.pdf


class BrokenStorage:
    def upload_bytes(self, content, dest_path, content_type):
        raise ArtifactStorageError(f"Impossible d'ecrire le fichier : {dest_path}")


def _runner(db, fetcher, **kwargs):
    kwargs.setdefault("api_delay_ms", 0)
    kwargs.setdefault("sleep", lambda seconds: None)
    return JobRunner(db, fetcher, **kwargs)


def _enqueue_photos(db, *medias, agency="S10", data_id=100):
    queue = JobQueue(db)
    return [
        queue.enqueue(models.new_photo_job(agency, 1, data_id, media, 42, "2026", "CE1", equipment_numero="SEC01"))
        for media in medias
    ]


def _path(uri):
    return Path(uri.replace("file://", "", 1))


def test_drain_downloads_and_stores_photos(db_session):
    queue = JobQueue(db_session)
    for media, photo_type in [("a.jpg", "plaque"), ("b.jpg", None)]:
        queue.enqueue(
            models.new_photo_job("S10", 1, 100, media, 42, "2026", "CE1", equipment_numero="SEC01", photo_type=photo_type)
        )
    fetcher = FakeFetcher({"a.jpg": b"aaaa", "b.jpg": b"bb"})

    report = _runner(db_session, fetcher).drain(models.JOB_TYPE_PHOTO)

    assert report.total == 2
    assert report.downloaded == 2
    assert report.failed == 0
    assert report.total_bytes == 6
    done = {job.media_name: job for job in JobQueue(db_session).find_by_form_data(1, 100)}
    assert {job.status for job in done.values()} == {models.STATUS_DONE}
    assert done["a.jpg"].local_path.endswith("/photos/S10/42/2026/CE1/SEC01_plaque_100.jpg")
    assert done["b.jpg"].local_path.endswith("/photos/S10/42/2026/CE1/SEC01_generale_100.jpg")
    assert _path(done["a.jpg"].local_path).read_bytes() == b"aaaa"
    assert _path(done["b.jpg"].local_path).read_bytes() == b"bb"


def test_ingested_photos_of_one_equipment_keep_their_own_files(db_session):
    submission = FormSubmission(
        form_id=1,
        data_id=100,
        id_contact=42,
        annee="2026",
        contract_equipments=[FormEquipment("SEC01", "CE1", "Porte sectionnelle")],
        medias=[
            FormMedia("plaque.jpg", "SEC01", photo_type="plaque"),
            FormMedia("vue.jpg", "SEC01", photo_type="generale"),
            FormMedia("vue2.jpg", "SEC01", photo_type="generale"),
        ],
    )
    create_jobs(db_session, submission, "S10")
    fetcher = FakeFetcher({"plaque.jpg": b"PLAQUE", "vue.jpg": b"VUE-GENERALE", "vue2.jpg": b"VUE-2"})

    report = _runner(db_session, fetcher).drain(models.JOB_TYPE_PHOTO)

    assert report.downloaded == 3
    photos = [job for job in JobQueue(db_session).find_by_form_data(1, 100) if job.is_photo]
    contents = {job.media_name: _path(job.local_path).read_bytes() for job in photos}
    assert contents == {"plaque.jpg": b"PLAQUE", "vue.jpg": b"VUE-GENERALE", "vue2.jpg": b"VUE-2"}
    assert len({job.local_path for job in photos}) == 3


def test_one_failing_job_does_not_stop_the_pass(db_session):
    _enqueue_photos(db_session, "ok.jpg", "missing.jpg", "ok2.jpg")
    fetcher = FakeFetcher({"ok.jpg": b"1", "ok2.jpg": b"2"})

    report = _runner(db_session, fetcher).drain(models.JOB_TYPE_PHOTO)

    assert (report.downloaded, report.failed) == (2, 1)
    stats = JobQueue(db_session).global_stats()
    assert stats["photo"]["failed"] == 1
    assert stats["photo"]["done"] == 2
    assert stats["photo"]["pending"] == 0
    failed = JobQueue(db_session).recent_failures()
    assert failed[0].media_name == "missing.jpg"
    assert failed[0].failure_reason == "HTTP 404"


def test_empty_payload_marks_job_failed(db_session):
    _enqueue_photos(db_session, "empty.jpg")
    report = _runner(db_session, FakeFetcher({"empty.jpg": b""})).drain(models.JOB_TYPE_PHOTO)
    assert report.failed == 1
    job = JobQueue(db_session).recent_failures()[0]
    assert job.failure_reason == "API a retourne un contenu vide"


def test_storage_failure_marks_job_failed(db_session):
    _enqueue_photos(db_session, "a.jpg")
    report = _runner(db_session, FakeFetcher({"a.jpg": b"x"}), storage=BrokenStorage()).drain(models.JOB_TYPE_PHOTO)
    assert report.failed == 1
    assert "Impossible d'ecrire" in JobQueue(db_session).recent_failures()[0].failure_reason


def test_multi_part_media_stores_each_part(db_session):
    _enqueue_photos(db_session, "p1.jpg, p2.jpg")
    fetcher = FakeFetcher({"p1.jpg": b"one", "p2.jpg": b"two!"})

    report = _runner(db_session, fetcher).drain(models.JOB_TYPE_PHOTO)

    assert report.downloaded == 1
    assert report.total_bytes == 7
    assert [call[2] for call in fetcher.calls] == ["p1.jpg", "p2.jpg"]
    job = JobQueue(db_session).find_by_form_data(1, 100)[0]
    folder = _path(job.local_path).parent
    assert (folder / "SEC01_generale_p1_100.jpg").read_bytes() == b"one"
    assert (folder / "SEC01_generale_p2_100.jpg").read_bytes() == b"two!"
    assert job.file_size == 7


def test_multi_part_keeps_parts_that_succeeded(db_session):
    _enqueue_photos(db_session, "p1.jpg,,gone.jpg")
    report = _runner(db_session, FakeFetcher({"p1.jpg": b"one"})).drain(models.JOB_TYPE_PHOTO)
    assert report.downloaded == 1
    assert report.failed == 0


def test_multi_part_fails_when_no_part_downloads(db_session):
    _enqueue_photos(db_session, "x.jpg,y.jpg")
    report = _runner(db_session, FakeFetcher()).drain(models.JOB_TYPE_PHOTO)
    assert report.failed == 1
    reason = JobQueue(db_session).recent_failures()[0].failure_reason
    assert reason.startswith("Aucune partie telechargee")


def test_pdf_job_uses_client_name_and_visit_date(db_session):
    JobQueue(db_session).enqueue(
        models.new_pdf_job("S40", 7, 900, 42, "2026", "CE2", client_name="ACME SA", date_visite="2026-03-04")
    )
    report = _runner(db_session, FakeFetcher()).drain(models.JOB_TYPE_PDF, agency="s40")
    assert report.downloaded == 1
    job = JobQueue(db_session).find_by_form_data(7, 900)[0]
    assert job.local_path.endswith("/pdf/S40/42/2026/CE2/ACME_SA-2026-03-04-CE2.pdf")
    assert job.status == models.STATUS_DONE


def test_dry_run_leaves_jobs_pending(db_session):
    _enqueue_photos(db_session, "a.jpg", "b.jpg", "c.jpg")
    fetcher = FakeFetcher({"a.jpg": b"a"})

    report = _runner(db_session, fetcher).drain(models.JOB_TYPE_PHOTO, chunk_size=2, dry_run=True)

    assert report.total == 3
    assert report.skipped == 3
    assert fetcher.calls == []
    assert JobQueue(db_session).count_pending(models.JOB_TYPE_PHOTO) == 3


def test_limit_and_agency_bound_the_pass(db_session):
    _enqueue_photos(db_session, "a.jpg", "b.jpg", "c.jpg")
    _enqueue_photos(db_session, "other.jpg", agency="S60", data_id=200)
    fetcher = FakeFetcher({"a.jpg": b"a", "b.jpg": b"b", "c.jpg": b"c", "other.jpg": b"o"})

    report = _runner(db_session, fetcher).drain(models.JOB_TYPE_PHOTO, agency="S10", limit=2, chunk_size=1)

    assert report.total == 2
    queue = JobQueue(db_session)
    assert queue.count_pending(models.JOB_TYPE_PHOTO, "S10") == 1
    assert queue.count_pending(models.JOB_TYPE_PHOTO, "S60") == 1


def test_retry_failed_requeues_before_the_pass(db_session):
    job = _enqueue_photos(db_session, "a.jpg")[0]
    queue = JobQueue(db_session)
    queue.mark_processing(job)
    queue.mark_failed(job, "HTTP 500")

    report = _runner(db_session, FakeFetcher({"a.jpg": b"a"})).drain(models.JOB_TYPE_PHOTO, retry_failed=True)

    assert report.retried == 1
    assert report.downloaded == 1
    db_session.refresh(job)
    assert job.attempts == 2


def test_unknown_job_type_is_rejected(db_session):
    with pytest.raises(ValueError):
        _runner(db_session, FakeFetcher()).drain("video")


class RunnerPacingTests(unittest.TestCase):
    def test_pause_sleeps_configured_delay(self):
        pauses = []
        runner = JobRunner(db=None, fetcher=FakeFetcher(), storage=BrokenStorage(), api_delay_ms=250, sleep=pauses.append)
        runner._pause()
        self.assertEqual(pauses, [0.25])

    def test_zero_delay_never_sleeps(self):
        pauses = []
        runner = JobRunner(db=None, fetcher=FakeFetcher(), storage=BrokenStorage(), api_delay_ms=0, sleep=pauses.append)
        runner._pause()
        self.assertEqual(pauses, [])

    def test_report_serializes(self):
        report = DrainReport(job_type="pdf", total=3, downloaded=2, failed=1)
        data = report.to_dict()
        self.assertEqual(data["job_type"], "pdf")
        self.assertEqual(data["failed"], 1)
        self.assertFalse(data["dry_run"])


def test_bucket_network_error_fails_one_job_and_drain_goes_on(db_session, monkeypatch):
    monkeypatch.setenv("LOCAL_STORAGE", "0")
    monkeypatch.setenv("GCS_BUCKET", "fieldsync-test")
    _enqueue_photos(db_session, "a.jpg", "b.jpg")
    with patch("fieldsync.services.storage.storage.Client") as client_cls:
        blob = client_cls.return_value.bucket.return_value.blob.return_value
        blob.upload_from_string.side_effect = [TransportError("dns lookup failed"), None]
        report = _runner(db_session, FakeFetcher({"a.jpg": b"a", "b.jpg": b"b"}), storage=StorageClient()).drain(
            models.JOB_TYPE_PHOTO
        )

    assert report.failed == 1
    assert report.downloaded == 1
    stats = JobQueue(db_session).global_stats()
    assert stats["photo"]["failed"] == 1
    assert stats["photo"]["done"] == 1
    assert "Echec envoi GCS" in JobQueue(db_session).recent_failures()[0].failure_reason
