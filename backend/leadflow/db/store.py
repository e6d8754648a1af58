import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

logger = logging.getLogger(__name__)

Sort = List[Tuple[str, int]]


def build_update_document(
    set_fields: Optional[Dict[str, Any]] = None,
    unset_fields: Optional[Iterable[str]] = None,
    increment: Optional[Dict[str, int]] = None,
    add_to_set: Optional[Dict[str, list]] = None,
) -> Dict[str, Any]:
    """Translate a field-level update into a single MongoDB update document."""
    update: Dict[str, Any] = {}
    if set_fields:
        update["$set"] = dict(set_fields)
    if unset_fields:
        update["$unset"] = {field: "" for field in unset_fields}
    if increment:
        update["$inc"] = dict(increment)
    if add_to_set:
        update["$addToSet"] = {field: {"$each": list(values)} for field, values in add_to_set.items()}
    if not update:
        raise ValueError("Empty update")
    return update


class DocumentStore:
    """
    Key/collection store with filtered queries and atomic per-document updates.

    Every update touches exactly one document. Passing `where` turns the update
    into a compare-and-set: it only applies while the document still matches,
    which is how workers claim a record by its current status.
    """

    ASCENDING = ASCENDING
    DESCENDING = DESCENDING

    def __init__(self, database: AsyncIOMotorDatabase):
        self.database = database

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return await self.database[collection].find_one({"_id": doc_id})

    async def find(self, collection: str, query: dict, limit: Optional[int] = None, sort: Optional[Sort] = None) -> List[dict]:
        cursor = self.database[collection].find(query)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=limit)

    async def find_one(self, collection: str, query: dict, sort: Optional[Sort] = None) -> Optional[dict]:
        documents = await self.find(collection, query, limit=1, sort=sort)
        return documents[0] if documents else None

    async def insert(self, collection: str, document: dict) -> str:
        document = dict(document)
        document.setdefault("_id", uuid.uuid4().hex)
        await self.database[collection].insert_one(document)
        return document["_id"]

    async def update(
        self,
        collection: str,
        doc_id: str,
        *,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Optional[Iterable[str]] = None,
        increment: Optional[Dict[str, int]] = None,
        add_to_set: Optional[Dict[str, list]] = None,
        where: Optional[dict] = None,
    ) -> bool:
        """Apply one atomic update; returns False when no document matched."""
        update = build_update_document(set_fields, unset_fields, increment, add_to_set)
        query = {"_id": doc_id, **(where or {})}
        result = await self.database[collection].update_one(query, update)
        if result.matched_count == 0:
            logger.debug(f"[STORE] No match for {collection}/{doc_id} where={where}")
        return result.matched_count == 1
