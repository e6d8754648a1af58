from datetime import timedelta

import pytest

from conftest import T0, FakeLLM
from leadflow.models.generation_job import InvalidTransitionError
from leadflow.models.video_script import ScriptStatus
from leadflow.services.script_pipeline import ScriptPipeline, check_script_transition
from leadflow.services.transport import TransportError

ANA = "5215512345678@s.whatsapp.net"
SCRIPTS = "video_scripts"
VOICE_NOTE = "https://cdn.test/nota.ogg"


@pytest.fixture
def make_pipeline(store, catalog, messenger, clock):
    def _make(llm=None, voice_note_url=VOICE_NOTE):
        return ScriptPipeline(store, catalog, llm or FakeLLM(), messenger, clock=clock, voice_note_url=voice_note_url)
    return _make


def seed_script(store, script_id="s-1", status=ScriptStatus.NO_SCRIPT, **fields):
    document = {
        "_id": script_id,
        "lead_id": ANA,
        "lead_phone": "5215512345678",
        "sender_name": "Carla Ruiz",
        "status": status.value,
        "description": "Panadería artesanal",
        "business_name": "Pan de Casa",
        "purpose": "Más pedidos a domicilio",
        "created_at": T0,
    }
    document.update(fields)
    store.seed(SCRIPTS, document)


async def test_generation_processes_a_bounded_batch(store, make_pipeline, clock):
    for i in range(3):
        seed_script(store, script_id=f"s-{i}", created_at=T0 + timedelta(minutes=i))
    llm = FakeLLM("guion 0", "guion 1", "guion 2")

    assert await make_pipeline(llm=llm).generate_scripts(batch_size=2) == 2

    assert store.raw(SCRIPTS, "s-0")["status"] == "send_script"
    assert store.raw(SCRIPTS, "s-0")["script"] == "guion 0"
    assert store.raw(SCRIPTS, "s-0")["script_generated_at"] == clock.now
    assert store.raw(SCRIPTS, "s-2")["status"] == "no_script"
    assert "Promoción (si la hay): ninguna" in llm.calls[0][1]


async def test_empty_script_is_parked(store, make_pipeline):
    seed_script(store)

    await make_pipeline(llm=FakeLLM("")).generate_scripts()

    assert store.raw(SCRIPTS, "s-1")["status"] == "error_script"


async def test_delivery_sends_notice_script_and_voice_note(store, make_pipeline, transport, clock):
    store.seed("leads", {"_id": ANA, "phone": "5215512345678", "active_sequences": [], "tags": []})
    seed_script(store, status=ScriptStatus.SEND_SCRIPT, script="0:00 Gancho...", script_generated_at=T0)
    now = clock.advance(minutes=20)

    assert await make_pipeline().deliver_scripts() == 1

    assert [entry[0] for entry in transport.sent] == ["text", "text", "audio"]
    assert transport.sent[0][2].startswith("¡Listo Carla!")
    assert transport.sent[1][2] == "0:00 Gancho..."
    assert transport.sent[2][2] == VOICE_NOTE

    script = store.raw(SCRIPTS, "s-1")
    assert script["status"] == "sent"
    assert script["sent_at"] == now
    lead = store.raw("leads", ANA)
    assert lead["tags"] == ["GuionEnviado"]
    assert lead["active_sequences"][0]["trigger"] == "GuionEnviado"
    assert len(store.collections["lead_messages"]) == 3


async def test_delivery_respects_cooldown(store, make_pipeline, transport, clock):
    seed_script(store, status=ScriptStatus.SEND_SCRIPT, script="guion", script_generated_at=T0)
    clock.advance(minutes=10)

    assert await make_pipeline().deliver_scripts() == 0
    assert transport.sent == []


async def test_failed_send_is_never_retried(store, make_pipeline, transport, clock):
    seed_script(store, status=ScriptStatus.SEND_SCRIPT, script="guion", script_generated_at=T0)
    transport.fail_with = TransportError("gateway down")
    clock.advance(minutes=20)
    pipeline = make_pipeline()

    assert await pipeline.deliver_scripts() == 0
    script = store.raw(SCRIPTS, "s-1")
    assert script["status"] == "sent"
    assert "gateway down" in script["error_message"]

    transport.fail_with = None
    await pipeline.deliver_scripts()
    assert transport.sent == []


def test_script_transitions_are_closed():
    check_script_transition(ScriptStatus.NO_SCRIPT, ScriptStatus.SEND_SCRIPT)
    with pytest.raises(InvalidTransitionError):
        check_script_transition(ScriptStatus.SENT, ScriptStatus.SEND_SCRIPT)
