import logging
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING

from leadflow.core.config import settings
from leadflow.models.generation_job import GenerationJob
from leadflow.models.lead import LeadModel, LeadMessage
from leadflow.models.video_script import VideoScript

logger = logging.getLogger(__name__)

_client: AsyncIOMotorClient = None


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("Database not initialized, call init_db() first")
    return _client[settings.DB_NAME]


async def _ensure_indexes(database: AsyncIOMotorDatabase):
    await database[GenerationJob.COLLECTION].create_index([("status", ASCENDING)])
    await database[GenerationJob.COLLECTION].create_index([("task_id", ASCENDING)], sparse=True)
    await database[VideoScript.COLLECTION].create_index([("status", ASCENDING)])
    await database[LeadModel.COLLECTION].create_index([("phone", ASCENDING)])
    await database[LeadModel.COLLECTION].create_index([("next_sequence_at", ASCENDING)], sparse=True)
    await database[LeadMessage.COLLECTION].create_index([("lead_id", ASCENDING), ("timestamp", ASCENDING)])
    await database["sequences"].create_index([("trigger", ASCENDING)], unique=True)


async def init_db() -> AsyncIOMotorDatabase:
    """
    Open the MongoDB connection for the current event loop and make sure the
    indexes the workers query on exist.
    """
    global _client
    try:
        logger.info("Initializing database connection...")
        _client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)

        # Test the connection
        await _client.admin.command('ping')
        logger.info("MongoDB connection test successful.")

        database = _client[settings.DB_NAME]
        await _ensure_indexes(database)
        logger.info("MongoDB connection established and indexes ensured.")
        return database
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def close_db():
    global _client
    if _client is not None:
        _client.close()
        _client = None
