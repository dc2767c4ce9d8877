from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from fieldsync.core.errors import StorageError
from fieldsync.db import models
from fieldsync.db.session import get_db
from fieldsync.jobs.queue import JobQueue
from fieldsync.main import app


@pytest.fixture()
def client(engine, db_session):
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def _get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _job_payload(**kwargs):
    payload = {
        "job_type": "photo",
        "agency": "S10",
        "form_id": 1,
        "data_id": 100,
        "id_contact": 42,
        "annee": "2026",
        "visite": "CE1",
        "media_name": "p1.jpg",
    }
    payload.update(kwargs)
    return payload


def _rows(*numbers):
    return [{"numero_equipement": n, "libelle_equipement": "Porte sectionnelle"} for n in numbers]


def test_health(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_status_on_empty_queue_returns_zeros(client):
    res = client.get("/api/jobs/status")
    assert res.status_code == 200
    body = res.json()
    assert body["global"]["photo"] == {"pending": 0, "processing": 0, "done": 0, "failed": 0}
    assert body["global"]["total"]["pending"] == 0
    assert body["by_agency"] == {}
    assert body["recent_failures"] == []
    assert body["stuck"] == 0


def test_status_for_one_agency(client, db_session):
    JobQueue(db_session).enqueue(models.new_pdf_job("S60", 1, 1, 42, "2026", "CE1"))
    res = client.get("/api/jobs/status", params={"agency": "s60"})
    assert res.status_code == 200
    body = res.json()
    assert body["agency"] == "S60"
    assert body["pdf"]["pending"] == 1
    assert body["photo"]["pending"] == 0


def test_global_status_only_counts_permitted_agencies(client, db_session):
    queue = JobQueue(db_session)
    job = queue.enqueue(models.new_photo_job("S40", 1, 1, "p1.jpg", 42, "2026", "CE1"))
    queue.mark_processing(job)
    job.started_at = datetime.utcnow() - timedelta(minutes=90)
    db_session.commit()
    queue.enqueue(models.new_pdf_job("S40", 1, 2, 42, "2026", "CE1"))

    body = client.get("/api/jobs/status", params={"agencies": "S10"}).json()
    assert body["global"]["total"] == {"pending": 0, "processing": 0, "done": 0, "failed": 0}
    assert body["by_agency"] == {}
    assert body["stuck"] == 0
    assert body["created_24h"] == 0

    body = client.get("/api/jobs/status", params={"agencies": "S10,S40"}).json()
    assert body["global"]["total"]["pending"] == 1
    assert body["global"]["total"]["processing"] == 1
    assert body["stuck"] == 1
    assert body["created_24h"] == 2


def test_unknown_agency_is_rejected(client):
    assert client.get("/api/jobs/status", params={"agency": "S99"}).status_code == 400
    assert client.get("/api/equipment/S99/42").status_code == 400
    res = client.post("/api/jobs", json=_job_payload(agency="XX"))
    assert res.status_code == 400
    assert "Code agence invalide" in res.json()["detail"]


def test_agency_outside_permitted_list_is_rejected(client):
    res = client.get("/api/equipment/S40/42", params={"agencies": "S10,S60"})
    assert res.status_code == 400


def test_create_job_then_duplicate_conflicts(client):
    res = client.post("/api/jobs", json=_job_payload())
    assert res.status_code == 201
    job = res.json()
    assert job["status"] == "pending"
    assert job["tenant"] == "S10"

    again = client.post("/api/jobs", json=_job_payload())
    assert again.status_code == 409

    fetched = client.get(f"/api/jobs/{job['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["media_name"] == "p1.jpg"


def test_photo_job_without_media_is_rejected(client):
    assert client.post("/api/jobs", json=_job_payload(media_name=None)).status_code == 400
    assert client.post("/api/jobs", json=_job_payload(job_type="video")).status_code == 400


def test_missing_or_hidden_job_is_404(client):
    assert client.get("/api/jobs/9999").status_code == 404
    job = client.post("/api/jobs", json=_job_payload()).json()
    assert client.get(f"/api/jobs/{job['id']}", params={"agencies": "S40"}).status_code == 404


def test_failing_a_pending_job_is_an_invalid_transition(client):
    job = client.post("/api/jobs", json=_job_payload()).json()
    res = client.post(f"/api/jobs/{job['id']}/fail", json={"reason": "abandon"})
    assert res.status_code == 409


def test_purge_dry_run_and_invalid_status(client):
    res = client.post("/api/jobs/purge", json={"status": "done", "dry_run": True})
    assert res.status_code == 200
    assert res.json()["would_delete"] == {"photo": 0, "pdf": 0}
    assert res.json()["days"] == 14
    assert client.post("/api/jobs/purge", json={"status": "pending"}).status_code == 400


def test_reset_stuck_and_retry_failed(client, db_session):
    queue = JobQueue(db_session)
    job = queue.enqueue(models.new_photo_job("S10", 1, 100, "p1.jpg", 42, "2026", "CE1"))
    queue.mark_processing(job)
    queue.mark_failed(job, "404")

    res = client.post("/api/jobs/reset-stuck", json={})
    assert res.json() == {"reset": 0, "threshold_minutes": 60}
    assert client.post("/api/jobs/reset-stuck", json={"minutes": 0}).status_code == 400
    assert client.post("/api/jobs/reset-stuck", json={"minutes": -5}).status_code == 400

    assert client.post("/api/jobs/retry-failed", json={}, params={"agencies": "S10"}).status_code == 400
    res = client.post("/api/jobs/retry-failed", json={"agency": "S10", "job_type": "photo"})
    assert res.json() == {"retried": 1}


def test_check_duplicates_endpoint(client):
    client.post("/api/equipment/S40/import", json={"id_contact": 1234, "annee": "2026", "rows": _rows("SEC01")})
    res = client.post(
        "/api/equipment/S40/check-duplicates",
        json={"id_contact": 1234, "annee": "2026", "rows": _rows("SEC01", "SEC02")},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["duplicate_count"] == 1
    assert body["clean_count"] == 1
    assert "SEC01" in body["duplicates"][0]


def test_import_and_list_equipment(client):
    res = client.post(
        "/api/equipment/s40/import",
        json={"id_contact": 1234, "annee": "2026", "rows": _rows("SEC01", "SEC02")},
    )
    assert res.status_code == 200
    assert res.json() == {"agency": "S40", "inserted_count": 2, "duplicates": [], "errors": []}

    listing = client.get("/api/equipment/S40/1234").json()
    assert listing["years"] == ["2026"]
    assert [item["numero_equipement"] for item in listing["items"]] == ["SEC01", "SEC02"]
    assert client.get("/api/equipment/S40/1234/duplicates").json()["groups"] == []


def test_upload_csv_import(client):
    content = "Numero equipement;Libelle;Visite\nSEC01;Porte sectionnelle;CE1\n".encode("utf-8")
    res = client.post(
        "/api/equipment/S50/import/upload",
        files={"file": ("equipements.csv", content, "text/csv")},
        data={"id_contact": "77", "annee": "2026"},
    )
    assert res.status_code == 200
    assert res.json()["inserted_count"] == 1
    assert res.json()["file_name"] == "equipements.csv"


def test_upload_rejects_unknown_format(client):
    res = client.post(
        "/api/equipment/S50/import/upload",
        files={"file": ("equipements.pdf", b"%PDF", "application/pdf")},
        data={"id_contact": "77", "annee": "2026"},
    )
    assert res.status_code == 400


def test_storage_failure_maps_to_503(client):
    with patch.object(JobQueue, "global_stats", side_effect=StorageError("global_stats", "database is locked")):
        res = client.get("/api/jobs/status")
    assert res.status_code == 503
    assert res.json() == {"detail": "Base de donnees indisponible"}


def test_check_duplicates_uses_the_year_of_each_row(client):
    client.post(
        "/api/equipment/S40/import",
        json={"id_contact": 1234, "annee": "2026", "rows": [dict(_rows("SEC01")[0], annee="2025")]},
    )
    res = client.post(
        "/api/equipment/S40/check-duplicates",
        json={"id_contact": 1234, "annee": "2026", "rows": [dict(_rows("SEC01")[0], annee="2025"), *_rows("SEC01")]},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["duplicate_count"] == 1
    assert body["clean_count"] == 1
