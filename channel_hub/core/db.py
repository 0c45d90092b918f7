from __future__ import annotations

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection

from .settings import Settings
from .logging import get_logger

logger = get_logger(__name__)

_client: MongoClient | None = None


# PUBLIC_INTERFACE
def get_mongo_client(settings: Settings) -> MongoClient:
    """Return a singleton MongoClient using settings from environment variables."""
    global _client
    if _client is None:
        logger.info("Connecting to MongoDB...")
        _client = MongoClient(settings.mongo.MONGODB_URL, tz_aware=True)
    return _client


# PUBLIC_INTERFACE
def get_db(settings: Settings):
    """Get the configured MongoDB database handle."""
    return get_mongo_client(settings)[settings.mongo.MONGODB_DB]


# PUBLIC_INTERFACE
def connections_collection(settings: Settings) -> Collection:
    """Get the connections collection, ensuring tenant-scoped indexes exist."""
    col = get_db(settings)[settings.mongo.MONGODB_COLLECTION]
    col.create_index([("organization_id", ASCENDING), ("provider_key", ASCENDING)])
    col.create_index([("organization_id", ASCENDING), ("id", ASCENDING)], unique=True)
    return col
