# app/database/mongodb.py
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING
from config import settings
import logging

logger = logging.getLogger(__name__)

# collection name → indexes as (keys, options)
AUDIT_INDEXES = {
    "verification_records": [
        ([("identity_id", ASCENDING)], {"unique": True}),
        ([("user_id", ASCENDING)], {}),
    ],
    "verification_events": [
        ([("identity_id", ASCENDING), ("created_at", ASCENDING)], {}),
    ],
}


class MongoDB:
    client = None
    db = None

    @classmethod
    async def connect_db(cls):
        try:
            cls.client = AsyncIOMotorClient(settings.MONGODB_URL, tls=settings.MONGODB_TLS)
            cls.db = cls.client[settings.DATABASE_NAME]
            await cls.client.admin.command("ping")
            logger.info(f"✅ MongoDB connected ({settings.DATABASE_NAME})")
        except Exception as e:
            logger.error(f"❌ Failed to connect MongoDB: {str(e)}")
            raise

        await cls.ensure_indexes()

    @classmethod
    async def ensure_indexes(cls):
        """Create audit indexes; a failure here leaves the service usable"""
        for collection_name, indexes in AUDIT_INDEXES.items():
            collection = cls.get_collection(collection_name)
            for keys, options in indexes:
                try:
                    await collection.create_index(keys, **options)
                except Exception as e:
                    logger.warning(f"⚠️ Could not create index {keys} on {collection_name}: {str(e)}")

    @classmethod
    async def close_db(cls):
        if cls.client:
            cls.client.close()
            cls.client = None
            cls.db = None
            logger.info("MongoDB disconnected")

    @classmethod
    def get_collection(cls, collection_name: str):
        if cls.db is None:
            raise RuntimeError("Database connection is not established.")
        return cls.db[collection_name]
