import logging
from typing import Dict, Optional

from pydantic import ValidationError

from leadflow.db.store import DocumentStore
from leadflow.models.sequence import SequenceDefinition

logger = logging.getLogger(__name__)


class SequenceCatalog:
    """
    Read-through cache of sequence definitions keyed by trigger name.

    Misses are cached too, so a lead pointing at a deleted trigger does not
    hit the store on every tick. Call invalidate() after editing definitions.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self._cache: Dict[str, Optional[SequenceDefinition]] = {}

    async def get(self, trigger: str) -> Optional[SequenceDefinition]:
        if not trigger:
            return None
        if trigger in self._cache:
            return self._cache[trigger]

        document = await self.store.find_one(SequenceDefinition.COLLECTION, {"trigger": trigger})
        definition = None
        if document:
            try:
                definition = SequenceDefinition.model_validate(document)
            except ValidationError as e:
                logger.error(f"[CATALOG] Sequence '{trigger}' is malformed, treating as absent: {e}")
        else:
            logger.info(f"[CATALOG] No sequence defined for trigger '{trigger}'")

        self._cache[trigger] = definition
        return definition

    def invalidate(self, trigger: Optional[str] = None):
        if trigger:
            self._cache.pop(trigger, None)
            logger.info(f"[CATALOG] Invalidated trigger '{trigger}'")
        else:
            self._cache.clear()
            logger.info("[CATALOG] Cache flushed")

    def __contains__(self, trigger: str) -> bool:
        return trigger in self._cache
