import logging
from datetime import datetime
from typing import Iterable, List, Optional

from leadflow.db.store import DocumentStore
from leadflow.models.lead import LeadModel, SequenceInstance
from leadflow.services.sequence_catalog import SequenceCatalog

logger = logging.getLogger(__name__)


async def compute_sequence_next_run(catalog: SequenceCatalog, instance: SequenceInstance) -> Optional[datetime]:
    """Due time of the instance's current step, or None if nothing is pending."""
    if instance.completed:
        return None
    definition = await catalog.get(instance.trigger)
    if not definition or not definition.messages:
        return None
    return definition.due_at(instance.start_time, instance.index)


async def calculate_lead_next_run(catalog: SequenceCatalog, instances: Iterable[SequenceInstance]) -> Optional[datetime]:
    earliest = None
    for instance in instances:
        next_run = await compute_sequence_next_run(catalog, instance)
        if next_run and (earliest is None or next_run < earliest):
            earliest = next_run
    return earliest


async def sync_lead_next_sequence(store: DocumentStore, catalog: SequenceCatalog, lead_id: str,
                                  instances: Optional[List[SequenceInstance]] = None) -> Optional[datetime]:
    """
    Store the earliest pending due time across the lead's active instances in
    `next_sequence_at` (a sortable index field), or clear it when none remain.
    """
    if not lead_id:
        return None

    if instances is None:
        document = await store.get(LeadModel.COLLECTION, lead_id)
        if not document:
            return None
        instances = LeadModel.from_document(document).active_sequences

    next_run = await calculate_lead_next_run(catalog, instances)
    if next_run:
        await store.update(LeadModel.COLLECTION, lead_id, set_fields={"next_sequence_at": next_run})
    else:
        await store.update(LeadModel.COLLECTION, lead_id, unset_fields=["next_sequence_at"])
    logger.debug(f"[NEXT_RUN] Lead {lead_id} next_sequence_at={next_run}")
    return next_run
