from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import T0, FakeAudioClient, FakeLLM, FakeMedia
from leadflow.main import app
from leadflow.models.generation_job import JobStatus
from leadflow.runtime import Services
from leadflow.services.drip_scheduler import DripScheduler
from leadflow.services.inbound import InboundMessageHandler, TriggerRules
from leadflow.services.job_pipeline import JobPipeline
from leadflow.services.script_pipeline import ScriptPipeline

ANA = "5215512345678@s.whatsapp.net"
JOBS = "generation_jobs"


@pytest.fixture
def client(store, catalog, resolver, transport, messenger, media_storage, clock):
    app.state.services = Services(
        store=store,
        catalog=catalog,
        resolver=resolver,
        transport=transport,
        messenger=messenger,
        storage=media_storage,
        drip=DripScheduler(store, catalog, messenger, clock),
        inbound=InboundMessageHandler(store, resolver, catalog, TriggerRules({"#webpro1490": "LeadWeb1490"}), clock),
        jobs=JobPipeline(store, catalog, FakeLLM(), FakeAudioClient(), FakeMedia(), media_storage, messenger,
                         clock=clock, watermark_url="http://assets.test/wm.mp3"),
        scripts=ScriptPipeline(store, catalog, FakeLLM(), messenger, clock=clock),
    )
    yield TestClient(app)
    del app.state.services


def seed_processing_job(store):
    store.seed(JOBS, {"_id": "job-1", "status": JobStatus.PROCESSING.value, "task_id": "task-9",
                      "submitted_at": T0, "created_at": T0})


def complete_callback(task_id, audio_url="https://cdn.test/song.mp3"):
    return {"code": 200, "data": {"callbackType": "complete", "task_id": task_id,
                                  "data": [{"audio_url": audio_url}]}}


# ----------------------------------------------------------------- callback

def test_callback_for_matching_task(client, store):
    seed_processing_job(store)

    response = client.post("/api/generation/callback", json=complete_callback("task-9"))

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert store.raw(JOBS, "job-1")["status"] == "audio_ready"


def test_callback_for_foreign_task_is_acknowledged(client, store):
    seed_processing_job(store)

    response = client.post("/api/generation/callback", json=complete_callback("unknown"))

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}
    assert store.raw(JOBS, "job-1")["status"] == "processing"


def test_callback_without_task_id_is_rejected(client):
    assert client.post("/api/generation/callback", json={"data": {}}).status_code == 400


def test_callback_without_audio_is_acknowledged(client, store):
    seed_processing_job(store)

    response = client.post("/api/generation/callback", json={"data": {"task_id": "task-9", "data": []}})

    assert response.status_code == 200
    assert store.raw(JOBS, "job-1")["status"] == "processing"


def test_callback_fault_after_match_returns_500(client, store, media_storage):
    seed_processing_job(store)
    media_storage.fail_download.add("https://cdn.test/song.mp3")

    response = client.post("/api/generation/callback", json=complete_callback("task-9"))

    assert response.status_code == 500
    assert store.raw(JOBS, "job-1")["status"] == "error_generation"


# ----------------------------------------------------------------- whatsapp

def test_inbound_events_create_leads_and_drop_groups(client, store):
    payload = {"messages": [
        {"key": {"remoteJid": ANA, "fromMe": False}, "pushName": "Ana",
         "message": {"extendedTextMessage": {"text": "Vi su anuncio #webpro1490"}}},
        {"key": {"remoteJid": "120363025@g.us"}, "message": {"conversation": "hola"}},
    ]}

    response = client.post("/api/whatsapp/events", json=payload)

    assert response.json() == {"handled": 1, "dropped": 1}
    lead = store.raw("leads", ANA)
    assert lead["tags"] == ["LeadWeb1490"]
    assert lead["unread_count"] == 1


def test_inbound_media_event_is_logged_with_type(client, store):
    payload = {"key": {"remoteJid": ANA}, "message": {"imageMessage": {"caption": "mi logo"}},
               "mediaUrl": "https://cdn.test/logo.png"}

    client.post("/api/whatsapp/events", json=payload)

    entry = next(iter(store.collections["lead_messages"].values()))
    assert (entry["media_type"], entry["content"], entry["media_url"]) == ("image", "mi logo", "https://cdn.test/logo.png")


def test_status_reports_gateway_session(client):
    assert client.get("/api/whatsapp/status").json()["connected"] is True


def test_operator_send_message(client, store, transport):
    store.seed("leads", {"_id": ANA, "phone": "5215512345678"})

    response = client.post("/api/whatsapp/send-message", json={"lead_id": ANA, "message": "¿Seguimos?"})

    assert response.status_code == 200
    assert transport.sent == [("text", ANA, "¿Seguimos?")]
    entry = next(iter(store.collections["lead_messages"].values()))
    assert entry["sender"] == "business"


def test_operator_send_to_unknown_lead(client):
    assert client.post("/api/whatsapp/send-message", json={"lead_id": "nobody", "message": "x"}).status_code == 404


def test_operator_send_while_disconnected(client, store, transport):
    store.seed("leads", {"_id": ANA, "phone": "5215512345678"})
    transport.connected = False

    assert client.post("/api/whatsapp/send-message", json={"lead_id": ANA, "message": "x"}).status_code == 409


def test_mark_read_resets_unread_counter(client, store):
    store.seed("leads", {"_id": ANA, "unread_count": 4})

    assert client.post("/api/whatsapp/mark-read", json={"lead_id": ANA}).status_code == 200
    assert store.raw("leads", ANA)["unread_count"] == 0


# --------------------------------------------------------------- operations

def test_retry_endpoint(client, store):
    store.seed(JOBS, {"_id": "job-1", "status": "error_upload", "error_message": "x", "created_at": T0})
    store.seed(JOBS, {"_id": "job-2", "status": "delivered", "created_at": T0})

    ok = client.post("/api/jobs/job-1/retry")
    assert ok.status_code == 200
    assert ok.json() == {"job_id": "job-1", "status": "audio_ready"}
    assert client.post("/api/jobs/job-2/retry").status_code == 409
    assert client.post("/api/jobs/missing/retry").status_code == 404


def test_cache_invalidation_flushes_local_catalog_and_notifies_workers(client, catalog):
    catalog._cache["Promo"] = None

    with patch("leadflow.api.jobs.invalidate_sequence_cache_task") as task:
        response = client.post("/api/sequences/cache/invalidate", json={"trigger": "Promo"})

    assert response.json() == {"invalidated": "Promo"}
    assert "Promo" not in catalog
    task.delay.assert_called_once_with("Promo")


def test_media_route_serves_stored_audio(client, media_storage):
    media_storage.files["generation/clip/job-1-clip.m4a"] = (b"clip-bytes", "audio/mp4")

    response = client.get("/api/media/generation/clip/job-1-clip.m4a")

    assert response.status_code == 200
    assert response.content == b"clip-bytes"
    assert response.headers["content-type"] == "audio/mp4"
    assert client.get("/api/media/nothing.mp3").status_code == 404
