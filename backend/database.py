from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
            db_name = os.environ.get('DB_NAME', 'document_fulfillment')
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for lookups and idempotency guarantees."""
        try:
            # Document records - token lookups are by uppercase token
            await self.db.document_tokens.create_index("id", unique=True)
            await self.db.document_tokens.create_index("token", unique=True)
            await self.db.document_tokens.create_index([("status", 1), ("updated_at", -1)])

            # Transition history - timeline per document
            await self.db.document_status_history.create_index([("document_id", 1), ("created_at", 1)])

            # Payment sessions - one row per checkout attempt; many per document
            await self.db.payment_sessions.create_index("order_id", unique=True)
            await self.db.payment_sessions.create_index([("document_id", 1), ("created_at", -1)])
            await self.db.payment_sessions.create_index([("status", 1), ("created_at", 1)])

            # Gateway webhook idempotency - duplicate event_id must not process twice
            await self.db.gateway_events.create_index("event_id", unique=True)

            await self.db.audit_logs.create_index([("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
