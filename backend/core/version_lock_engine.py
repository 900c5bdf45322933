"""
LEDGER CORE - OPTIMISTIC VERSION ENGINE

Provides:
1. A monotonic financialVersion per scope document (project/phase/floor)
2. Conditional writes: a snapshot is only written if the version it was
   computed from is still current
3. Recompute-and-retry on conflict
4. VersionConflictError once retries are exhausted
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional, Dict, Any, Callable, Awaitable
import logging

logger = logging.getLogger(__name__)

VERSION_FIELD = "financialVersion"
DEFAULT_MAX_RETRIES = 3


class DocumentNotFoundError(Exception):
    """Raised when a ledger document does not exist (or is soft-deleted)"""
    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} {entity_id} not found")


class VersionConflictError(Exception):
    """Raised when a scope kept changing underneath a recalculation"""
    def __init__(self, entity_type: str, entity_id, expected_version: int, attempts: int):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.expected_version = expected_version
        self.attempts = attempts
        super().__init__(
            f"{entity_type} {entity_id} changed concurrently "
            f"(expected version {expected_version}, gave up after {attempts} attempts)"
        )


# compute(doc) -> fields to $set, derived from the doc as read
SnapshotComputer = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def version_filter(entity_id, version: int) -> Dict[str, Any]:
    """
    Filter matching the document only at the given version.
    Documents written before versioning have no field; treat that as 0.
    """
    if version == 0:
        return {
            "_id": entity_id,
            "$or": [
                {VERSION_FIELD: 0},
                {VERSION_FIELD: {"$exists": False}}
            ]
        }
    return {"_id": entity_id, VERSION_FIELD: version}


class OptimisticVersionWriter:
    """
    Conditional snapshot writer for recalculated scopes.

    RULES:
    1. Read the scope and its financialVersion
    2. Compute the snapshot from that read
    3. $set the snapshot and $inc the version, matching on the version read
    4. No match -> someone wrote in between: re-read, recompute, retry
    """

    def __init__(self, db: AsyncIOMotorDatabase, max_retries: int = DEFAULT_MAX_RETRIES):
        self.db = db
        self.max_retries = max(1, max_retries)

    async def write(
        self,
        collection: str,
        entity_type: str,
        entity_id,
        compute: SnapshotComputer,
        extra_filter: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Compute and conditionally persist a snapshot.

        Returns:
            {"previous": doc as read, "updates": fields written, "version": new version}

        Raises:
            DocumentNotFoundError if the scope does not exist
            VersionConflictError if every attempt lost the race
        """
        base_filter = {"_id": entity_id}
        if extra_filter:
            base_filter.update(extra_filter)

        version = 0
        for attempt in range(1, self.max_retries + 1):
            doc = await self.db[collection].find_one(base_filter)
            if not doc:
                raise DocumentNotFoundError(entity_type, entity_id)

            version = doc.get(VERSION_FIELD, 0) or 0
            updates = await compute(doc)

            result = await self.db[collection].update_one(
                version_filter(entity_id, version),
                {
                    "$set": updates,
                    "$inc": {VERSION_FIELD: 1}
                }
            )

            if result.matched_count == 1:
                return {
                    "previous": doc,
                    "updates": updates,
                    "version": version + 1
                }

            logger.warning(
                f"[VERSION] Conflict writing {entity_type} {entity_id} at version {version} "
                f"(attempt {attempt}/{self.max_retries}), recomputing"
            )

        raise VersionConflictError(entity_type, entity_id, version, self.max_retries)
