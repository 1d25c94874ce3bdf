from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'formflow')


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            # tz_aware so stored timestamps come back as UTC-aware datetimes
            self.client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
            self.db = self.client[DB_NAME]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {DB_NAME}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for the key-value collections."""
        try:
            # Submissions - list by form type, newest first
            await self.db.submissions.create_index("payload.form_type")
            await self.db.submissions.create_index("payload.status")
            await self.db.submissions.create_index([("created_at", -1)])

            # Templates - selection by form type
            await self.db.templates.create_index("payload.form_type")
            await self.db.templates.create_index([("created_at", 1)])
            await self.db.documentTemplates.create_index("payload.form_type")
            await self.db.documentTemplates.create_index([("created_at", 1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")


# Global database instance
database = Database()

