import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from leadflow.core.config import settings
from leadflow.db.store import DocumentStore
from leadflow.models.lead import LeadModel

logger = logging.getLogger(__name__)

USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"
LID_SERVER = "lid"


def phone_from_jid(jid: Optional[str]) -> Optional[str]:
    """Bare contact token: only the digits of the user part."""
    if not jid:
        return None
    local = str(jid).split("@")[0]
    digits = re.sub(r"\D", "", local.split(":")[0])
    return digits or None


def normalize_jid(jid: Optional[str]) -> Optional[str]:
    """Drop device suffixes ("123:4@...") and fold the legacy c.us server."""
    if not jid or "@" not in jid:
        return jid or None
    user, server = jid.split("@", 1)
    user = user.split(":")[0]
    if server == "c.us":
        server = USER_SERVER
    return f"{user}@{server}"


def is_group_jid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.endswith(f"@{GROUP_SERVER}")


def number_to_jid(number: Optional[str], country_code: Optional[str] = None) -> Optional[str]:
    digits = re.sub(r"\D", "", str(number or ""))
    if not digits:
        return None
    if len(digits) == 10:
        digits = (country_code or settings.DEFAULT_COUNTRY_CODE) + digits
    return f"{digits}@{USER_SERVER}"


@dataclass
class ResolvedIdentity:
    lead_key: str                 # canonical store key (primary routing id)
    phone: str
    resolved_jid: Optional[str]
    addressing_mode: str
    is_lid_remote: bool

    @property
    def lid_jid(self) -> Optional[str]:
        return self.lead_key if self.is_lid_remote else None


class IdentityResolver:
    """
    Maps inbound routing identifiers to the canonical lead key and turns any
    send target (number, jid, lead) into a routable jid.
    """

    def __init__(self, store: DocumentStore, country_code: Optional[str] = None):
        self.store = store
        self.country_code = country_code or settings.DEFAULT_COUNTRY_CODE

    def resolve_inbound(self, remote_jid: Optional[str], remote_jid_alt: Optional[str] = None,
                        addressing_mode: Optional[str] = None) -> Optional[ResolvedIdentity]:
        """
        The alternate id is the stable phone-number jid when the chat network
        addresses the contact by an opaque id; it wins for the contact token,
        while the primary routing id stays the store key. Returns None for
        events that must be dropped (no id, group chats).
        """
        preferred = remote_jid_alt or remote_jid
        if not preferred:
            return None

        normalized_preferred = normalize_jid(preferred)
        if not normalized_preferred or is_group_jid(normalized_preferred):
            return None
        if remote_jid and is_group_jid(normalize_jid(remote_jid)):
            return None

        lead_key = normalize_jid(remote_jid) if remote_jid else normalized_preferred
        resolved_jid = normalize_jid(remote_jid_alt) if remote_jid_alt else None
        mode = addressing_mode or "pn"
        is_lid = mode == "lid" or normalized_preferred.endswith(f"@{LID_SERVER}")

        return ResolvedIdentity(
            lead_key=lead_key,
            phone=phone_from_jid(resolved_jid or normalized_preferred) or "",
            resolved_jid=resolved_jid,
            addressing_mode=mode,
            is_lid_remote=is_lid,
        )

    def jid_for_lead(self, lead: Union[LeadModel, dict]) -> Optional[str]:
        if isinstance(lead, LeadModel):
            lead = lead.to_document()
        candidate = lead.get("resolved_jid") or lead.get("jid") or lead.get("_id") or lead.get("lead_id")
        if candidate:
            return normalize_jid(candidate)
        return number_to_jid(lead.get("phone"), self.country_code)

    def resolve_target(self, target) -> Optional[str]:
        """Accepts a bare number, a full jid or a lead-shaped object."""
        if not target:
            return None
        if isinstance(target, str):
            if "@" in target:
                return normalize_jid(target)
            return number_to_jid(target, self.country_code)
        if isinstance(target, (LeadModel, dict)):
            jid = self.jid_for_lead(target)
            if jid:
                return jid
            phone = target.phone if isinstance(target, LeadModel) else target.get("phone")
            return self.resolve_target(phone or "")
        return None

    async def find_lead(self, jid: Optional[str]) -> Optional[dict]:
        """Lead by canonical key, falling back to its contact token."""
        if not jid:
            return None
        normalized = normalize_jid(jid)
        document = await self.store.get(LeadModel.COLLECTION, normalized)
        if document:
            return document
        digits = phone_from_jid(normalized)
        if digits:
            return await self.store.find_one(LeadModel.COLLECTION, {"phone": digits})
        return None
