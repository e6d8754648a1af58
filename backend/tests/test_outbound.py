import pytest

from leadflow.models.sequence import (
    AudioMessage,
    FormMessage,
    ImageMessage,
    SequenceStep,
    TextMessage,
)
from leadflow.services.outbound import build_outbound_message, replace_placeholders
from leadflow.services.transport import TransportError

LEAD = {"_id": "5215512345678@s.whatsapp.net", "name": "José Luis Pérez", "phone": "+52 155 1234 5678"}


def test_name_renders_first_token_only():
    assert replace_placeholders("Hola {{name}}!", LEAD) == "Hola José!"
    assert replace_placeholders("Hola {{nombre}}!", LEAD) == "Hola José!"


def test_missing_fields_render_empty():
    assert replace_placeholders("Hola {{name}} de {{city}}", {"name": None}) == "Hola  de "


def test_form_step_encodes_name_and_flattens_newlines():
    step = SequenceStep(type="formulario", content="Llena:\r\nhttps://f.test/?n={{name}}&t={{telefono}}\nGracias")

    message = build_outbound_message(step, LEAD)

    assert message == FormMessage(text="Llena: https://f.test/?n=Jos%C3%A9&t=5215512345678 Gracias")


def test_media_steps_substitute_into_url():
    step = SequenceStep(type="imagen", content="https://cdn.test/{{phone}}.png")

    assert build_outbound_message(step, {"phone": "521"}) == ImageMessage(url="https://cdn.test/521.png")


async def test_empty_text_is_not_sent(messenger, transport):
    assert await messenger.send(LEAD, TextMessage(text="")) is False
    assert transport.sent == []


async def test_audio_dispatches_as_voice_note(messenger, transport):
    assert await messenger.send(LEAD, AudioMessage(url="https://cdn.test/a.ogg")) is True

    kind, target, url, options = transport.sent[0]
    assert (kind, target, url) == ("audio", LEAD["_id"], "https://cdn.test/a.ogg")
    assert options == {"ptt": True}


async def test_transport_errors_propagate(messenger, transport):
    transport.fail_with = TransportError("down")

    with pytest.raises(TransportError):
        await messenger.send(LEAD, TextMessage(text="hola"))


async def test_record_updates_last_message_at(store, messenger):
    store.seed("leads", {"_id": LEAD["_id"]})

    await messenger.record(LEAD["_id"], content="hola")

    assert store.raw("leads", LEAD["_id"])["last_message_at"] is not None
    assert len(store.collections["lead_messages"]) == 1
