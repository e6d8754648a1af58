import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from leadflow.core.clock import Clock, utcnow
from leadflow.core.config import settings
from leadflow.db.store import DocumentStore
from leadflow.models.lead import LeadMessage, LeadModel, SequenceInstance
from leadflow.services.identity import IdentityResolver
from leadflow.services.next_run import sync_lead_next_sequence
from leadflow.services.sequence_catalog import SequenceCatalog

logger = logging.getLogger(__name__)

APP_CONFIG_ID = "appConfig"
MAX_WRITE_ATTEMPTS = 5


@dataclass
class InboundEvent:
    remote_jid: Optional[str]
    remote_jid_alt: Optional[str] = None
    addressing_mode: Optional[str] = None
    from_me: bool = False
    push_name: str = ""
    text: str = ""
    media_type: Optional[str] = None
    media_url: Optional[str] = None

    @property
    def sender(self) -> str:
        return "business" if self.from_me else "lead"


def keyword_predicate(keyword: str) -> Callable[[str], bool]:
    keyword = keyword.lower()
    return lambda text: keyword in (text or "").lower()


class TriggerRules:
    """
    Decides which trigger an inbound text starts and whether it is a restart
    command. Both are plain predicates over the text so deployments can swap
    the keywords without code changes.
    """

    def __init__(self, keyword_triggers: Optional[Dict[str, str]] = None,
                 restart_command: Optional[str] = None,
                 default_trigger: Optional[str] = None):
        keyword_triggers = settings.KEYWORD_TRIGGERS if keyword_triggers is None else keyword_triggers
        self.rules = [(keyword_predicate(keyword), trigger) for keyword, trigger in keyword_triggers.items()]
        self.is_restart = keyword_predicate(restart_command or settings.RESTART_COMMAND)
        self.default_trigger = default_trigger or settings.DEFAULT_TRIGGER

    def trigger_for(self, text: str, default_trigger: Optional[str] = None) -> str:
        for predicate, trigger in self.rules:
            if predicate(text):
                return trigger
        return default_trigger or self.default_trigger


class InboundMessageHandler:
    """
    Turns one inbound chat event into lead mutations: create-or-find the
    lead, decide whether a new sequence instance starts, log the message and
    keep the unread counter and next wake time current.
    """

    def __init__(self, store: DocumentStore, resolver: IdentityResolver, catalog: SequenceCatalog,
                 rules: Optional[TriggerRules] = None, clock: Optional[Clock] = None):
        self.store = store
        self.resolver = resolver
        self.catalog = catalog
        self.rules = rules or TriggerRules()
        self.clock = clock or utcnow

    async def _configured_default_trigger(self) -> Optional[str]:
        try:
            config = await self.store.get("config", APP_CONFIG_ID)
        except Exception as e:
            logger.warning(f"[INBOUND] Could not read app config, using default trigger: {e}")
            return None
        return (config or {}).get("default_trigger")

    @staticmethod
    def plan_sequences(existing: List[SequenceInstance], trigger: str, is_restart: bool,
                       now) -> Optional[List[SequenceInstance]]:
        """
        New active list for an existing lead, or None to leave it untouched.
        A restart drops same-trigger instances and always appends; otherwise
        append only when no incomplete instance of the trigger is active.
        """
        sequences = [s for s in existing if s is not None]
        if is_restart:
            sequences = [s for s in sequences if s.trigger != trigger]
        already_active = any(s.trigger == trigger and not s.completed for s in sequences)
        if already_active and not is_restart:
            return None
        return sequences + [SequenceInstance(trigger=trigger, start_time=now, index=0)]

    async def handle(self, event: InboundEvent) -> Optional[str]:
        """Returns the canonical lead key, or None when the event was dropped."""
        identity = self.resolver.resolve_inbound(event.remote_jid, event.remote_jid_alt, event.addressing_mode)
        if identity is None:
            logger.debug(f"[INBOUND] Dropping event from {event.remote_jid!r} (group or no id)")
            return None

        lead_id = identity.lead_key
        now = self.clock()
        text = (event.text or "").strip()
        is_restart = self.rules.is_restart(text)
        trigger = self.rules.trigger_for(text, await self._configured_default_trigger())

        document = await self.store.get(LeadModel.COLLECTION, lead_id)
        if document is None:
            lead = LeadModel(
                lead_id=lead_id,
                name=event.push_name or "",
                phone=identity.phone,
                tags=[trigger],
                active_sequences=[SequenceInstance(trigger=trigger, start_time=now, index=0)],
                unread_count=0,
                last_message_at=now,
                created_at=now,
                jid=lead_id,
                resolved_jid=identity.resolved_jid,
                lid_jid=identity.lid_jid,
                addressing_mode=identity.addressing_mode,
                is_lid_remote=identity.is_lid_remote,
            )
            try:
                await self.store.insert(LeadModel.COLLECTION, lead.to_document())
            except DuplicateKeyError:
                logger.info(f"[INBOUND] Lead {lead_id} was created by a concurrent event, updating it instead")
                document = await self.store.get(LeadModel.COLLECTION, lead_id)
            else:
                await sync_lead_next_sequence(self.store, self.catalog, lead_id, lead.active_sequences)
                logger.info(f"[INBOUND] Created lead {lead_id} with trigger {trigger}")

        entry = LeadMessage(
            lead_id=lead_id,
            content=text,
            media_type=event.media_type or ("text" if text else None),
            media_url=event.media_url,
            sender=event.sender,
            timestamp=now,
        )
        await self.store.insert(LeadMessage.COLLECTION, entry.model_dump())

        set_fields = {
            "last_message_at": now,
            "jid": lead_id,
            "addressing_mode": identity.addressing_mode,
            "is_lid_remote": identity.is_lid_remote,
        }
        if identity.phone:
            set_fields["phone"] = identity.phone
        if identity.resolved_jid:
            set_fields["resolved_jid"] = identity.resolved_jid
        if identity.lid_jid:
            set_fields["lid_jid"] = identity.lid_jid

        plans_sequences = document is not None and (event.sender == "lead" or is_restart)
        for _ in range(MAX_WRITE_ATTEMPTS):
            sequences = None
            where = None
            if plans_sequences:
                existing = LeadModel.from_document(document).active_sequences
                sequences = self.plan_sequences(existing, trigger, is_restart, now)
            if sequences is not None:
                set_fields["active_sequences"] = [s.model_dump() for s in sequences]
                where = {"active_sequences": document.get("active_sequences")}
            else:
                set_fields.pop("active_sequences", None)

            if await self.store.update(
                LeadModel.COLLECTION,
                lead_id,
                set_fields=set_fields,
                increment={"unread_count": 1} if event.sender == "lead" else None,
                add_to_set={"tags": [trigger]},
                where=where,
            ):
                break
            if where is None:
                logger.warning(f"[INBOUND] Lead {lead_id} vanished before its message could be recorded")
                return lead_id
            # Someone else changed the active sequences since the read: plan again on the fresh array
            document = await self.store.get(LeadModel.COLLECTION, lead_id)
            if document is None:
                return lead_id
        else:
            raise RuntimeError(f"Active sequences of lead {lead_id} kept changing, giving up after "
                               f"{MAX_WRITE_ATTEMPTS} attempts")

        if sequences is not None:
            logger.info(f"[INBOUND] Lead {lead_id}: starting sequence {trigger}"
                        f"{' (restart)' if is_restart else ''}")
            await sync_lead_next_sequence(self.store, self.catalog, lead_id, sequences)
        return lead_id
