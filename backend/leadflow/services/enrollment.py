import logging
from datetime import datetime
from typing import Optional

from leadflow.db.store import DocumentStore
from leadflow.models.lead import LeadModel, SequenceInstance
from leadflow.services.next_run import sync_lead_next_sequence
from leadflow.services.sequence_catalog import SequenceCatalog

logger = logging.getLogger(__name__)


async def enroll_lead(store: DocumentStore, catalog: SequenceCatalog, lead_id: Optional[str],
                      trigger: str, now: datetime) -> bool:
    """Append a fresh instance of `trigger` to the lead, tag it and refresh its next wake time."""
    if not lead_id:
        return False
    instance = SequenceInstance(trigger=trigger, start_time=now, index=0)
    updated = await store.update(
        LeadModel.COLLECTION,
        lead_id,
        add_to_set={"active_sequences": [instance.model_dump()], "tags": [trigger]},
    )
    if not updated:
        logger.warning(f"[ENROLL] Lead {lead_id} not found, {trigger} not started")
        return False
    await sync_lead_next_sequence(store, catalog, lead_id)
    logger.info(f"[ENROLL] Lead {lead_id} enrolled in {trigger}")
    return True
