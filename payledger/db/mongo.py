import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from payledger.core.config import settings

logger = logging.getLogger(__name__)

class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    mongodb.db = mongodb.client[settings.DATABASE_NAME]

    await create_indexes()
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)

async def close_mongo_connection():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
        mongodb.client = None
        mongodb.db = None
        logger.info("Disconnected from MongoDB")

async def create_indexes():
    """Create database indexes."""
    # Payment indexes
    await mongodb.db["payments"].create_index([("tenant_id", 1), ("client_id", 1)])
    await mongodb.db["payments"].create_index([("tenant_id", 1), ("document_id", 1)])
    await mongodb.db["payments"].create_index([("tenant_id", 1), ("payment_date", 1)])

    # Invoice (document) indexes
    await mongodb.db["documents"].create_index([("tenant_id", 1), ("client_id", 1)])
    await mongodb.db["documents"].create_index([("tenant_id", 1), ("client.id", 1)])

def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db
