from leadflow.models.lead import LeadModel
from leadflow.services.identity import is_group_jid, normalize_jid, number_to_jid, phone_from_jid


def test_phone_from_jid_strips_non_digits():
    assert phone_from_jid("5215512345678:12@s.whatsapp.net") == "5215512345678"
    assert phone_from_jid("+52 (155) 1234-5678") == "5215512345678"
    assert phone_from_jid(None) is None


def test_normalize_jid_drops_device_and_folds_legacy_server():
    assert normalize_jid("5215512345678:3@s.whatsapp.net") == "5215512345678@s.whatsapp.net"
    assert normalize_jid("5215512345678@c.us") == "5215512345678@s.whatsapp.net"
    assert normalize_jid("98765@lid") == "98765@lid"


def test_group_detection():
    assert is_group_jid("120363025@g.us")
    assert not is_group_jid("5215512345678@s.whatsapp.net")
    assert not is_group_jid(None)


def test_ten_digit_numbers_get_country_code():
    assert number_to_jid("55 1234 5678", "52") == "525512345678@s.whatsapp.net"
    assert number_to_jid("5215512345678", "52") == "5215512345678@s.whatsapp.net"
    assert number_to_jid("", "52") is None


def test_resolve_target_variants(resolver):
    assert resolver.resolve_target("5512345678") == "525512345678@s.whatsapp.net"
    assert resolver.resolve_target("5215512345678@c.us") == "5215512345678@s.whatsapp.net"
    assert resolver.resolve_target({"_id": None, "phone": "5215512345678"}) == "5215512345678@s.whatsapp.net"
    assert resolver.resolve_target(None) is None


def test_resolved_jid_wins_for_lead_targets(resolver):
    lead = LeadModel(lead_id="98765@lid", phone="5215512345678", resolved_jid="5215512345678@s.whatsapp.net")

    assert resolver.resolve_target(lead) == "5215512345678@s.whatsapp.net"


def test_resolve_inbound_drops_missing_ids(resolver):
    assert resolver.resolve_inbound(None) is None
    assert resolver.resolve_inbound("120363025@g.us") is None


async def test_find_lead_falls_back_to_phone(store, resolver):
    store.seed("leads", {"_id": "98765@lid", "phone": "5215512345678"})

    found = await resolver.find_lead("5215512345678@s.whatsapp.net")

    assert found["_id"] == "98765@lid"
