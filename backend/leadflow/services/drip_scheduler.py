import logging
from typing import List, Optional

from leadflow.core.clock import Clock, utcnow
from leadflow.db.store import DocumentStore
from leadflow.models.lead import LeadModel, SequenceInstance
from leadflow.services.outbound import Messenger, build_outbound_message, media_type_of
from leadflow.services.next_run import sync_lead_next_sequence
from leadflow.services.sequence_catalog import SequenceCatalog

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


def merge_advanced(current: Optional[List[dict]], snapshot: List[dict],
                   advanced: List[SequenceInstance]) -> List[SequenceInstance]:
    """
    Apply a tick's results onto the stored array. Entries still equal to what
    the tick read are replaced by their advanced instance (or dropped once
    completed); anything else in `current` was written by someone else and is
    kept as it is.
    """
    pending = list(zip(snapshot, advanced))
    merged = []
    for raw in current or []:
        match = next((i for i, (before, _) in enumerate(pending) if before == raw), None)
        if match is None:
            merged.append(SequenceInstance.model_validate(raw))
            continue
        _, instance = pending.pop(match)
        if not instance.completed:
            merged.append(instance)
    return merged


class DripScheduler:
    """
    Advances every active sequence instance of every lead, one tick at a
    time. Instances are independent: each has its own start time and index,
    and a failure in one never stops the others.
    """

    def __init__(self, store: DocumentStore, catalog: SequenceCatalog, messenger: Messenger,
                 clock: Optional[Clock] = None):
        self.store = store
        self.catalog = catalog
        self.messenger = messenger
        self.clock = clock or utcnow

    async def advance_all(self):
        logger.info("[DRIP] === SEQUENCE TICK STARTED ===")
        try:
            documents = await self.store.find(
                LeadModel.COLLECTION,
                {"active_sequences": {"$exists": True, "$ne": []}},
            )
        except Exception as e:
            logger.error(f"[DRIP] Failed to load leads with active sequences: {e}", exc_info=True)
            return

        advanced = 0
        for document in documents:
            try:
                if await self.advance_lead(document):
                    advanced += 1
            except Exception as e:
                logger.error(f"[DRIP] Failed to advance lead {document.get('_id')}: {e}", exc_info=True)

        logger.info(f"[DRIP] === SEQUENCE TICK COMPLETED: {advanced}/{len(documents)} leads changed ===")

    async def advance_lead(self, document: dict) -> bool:
        """Process one lead's instances in stored order; returns True if anything changed."""
        lead = LeadModel.from_document(document)
        if not lead.active_sequences:
            return False

        now = self.clock()
        dirty = False
        for instance in lead.active_sequences:
            if await self._advance_instance(lead, instance, now):
                dirty = True

        if dirty:
            remaining = await self._persist(lead.lead_id, document.get("active_sequences"), lead.active_sequences)
            if remaining is None:
                logger.warning(f"[DRIP] Lead {lead.lead_id} disappeared during the tick")
                return dirty
            await sync_lead_next_sequence(self.store, self.catalog, lead.lead_id, remaining)
            logger.info(f"[DRIP] Lead {lead.lead_id}: {len(remaining)} active sequence(s) remain")
        return dirty

    async def _advance_instance(self, lead: LeadModel, instance: SequenceInstance, now) -> bool:
        if instance.completed:
            return True

        definition = await self.catalog.get(instance.trigger)
        if definition is None:
            # Unknown trigger: leave the instance alone, maybe the definition shows up later
            return False

        if instance.index >= definition.step_count:
            instance.completed = True
            return True

        due = definition.due_at(instance.start_time, instance.index)
        if now < due:
            return False

        step = definition.messages[instance.index]
        try:
            message = build_outbound_message(step, lead)
            sent = await self.messenger.send(lead, message)
            if sent:
                await self.messenger.record(
                    lead.lead_id,
                    content=f"Sent {media_type_of(message)} step {instance.index} of sequence {instance.trigger}",
                    sender="system",
                )
        except Exception as e:
            logger.error(f"[DRIP] Send failed for lead {lead.lead_id} sequence {instance.trigger} "
                         f"step {instance.index}: {e}", exc_info=True)

        instance.index += 1
        if instance.index >= definition.step_count:
            instance.completed = True
        logger.info(f"[DRIP] Lead {lead.lead_id} sequence {instance.trigger} advanced to index {instance.index}")
        return True

    async def _persist(self, lead_id: str, snapshot: Optional[List[dict]],
                       advanced: List[SequenceInstance]) -> Optional[List[SequenceInstance]]:
        """
        Write the advanced instances with a compare-and-set on the array that
        was read, re-reading and merging when another writer got there first.
        Returns the stored instances, or None if the lead no longer exists.
        """
        current = snapshot
        for _ in range(MAX_WRITE_ATTEMPTS):
            merged = merge_advanced(current, snapshot or [], advanced)
            if await self.store.update(
                LeadModel.COLLECTION,
                lead_id,
                set_fields={"active_sequences": [s.model_dump() for s in merged]},
                where={"active_sequences": current},
            ):
                return merged
            document = await self.store.get(LeadModel.COLLECTION, lead_id)
            if document is None:
                return None
            logger.info(f"[DRIP] Active sequences of lead {lead_id} changed during the tick, merging")
            current = document.get("active_sequences")
        raise RuntimeError(f"Active sequences of lead {lead_id} kept changing, giving up after "
                           f"{MAX_WRITE_ATTEMPTS} attempts")
