"""
MongoDB Database Service
Holds the Motor connection shared by the MongoDB-backed repository and queue
"""
import asyncio
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure
import logging
from copilot_eval.config.settings import settings
from copilot_eval.utils.errors import TransientExternalError

logger = logging.getLogger(__name__)


class MongoDBService:
    """
    Asynchronous MongoDB connection holder
    Uses Motor for async MongoDB operations
    """

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None):
        self.uri = uri or settings.MONGODB_URI
        self.database_name = database or settings.MONGODB_DATABASE
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self._connected: bool = False
        self._connection_retries: int = 3
        self._connection_timeout: int = 30

    @property
    def is_connected(self) -> bool:
        """Check if database is connected"""
        return self._connected and self.client is not None

    async def connect(self) -> None:
        """
        Initialize MongoDB connection with retry logic
        """
        for attempt in range(self._connection_retries):
            try:
                logger.info(f"Attempting MongoDB connection (attempt {attempt + 1}/{self._connection_retries})")

                # Create client with connection pooling
                self.client = AsyncIOMotorClient(
                    self.uri,
                    serverSelectionTimeoutMS=self._connection_timeout * 1000,
                    connectTimeoutMS=self._connection_timeout * 1000,
                    maxPoolSize=50,
                    tz_aware=True
                )

                # Select database
                self.db = self.client[self.database_name]

                # Test connection
                await self.client.admin.command('ping')

                # Create indexes
                await self._create_indexes()

                self._connected = True
                logger.info(f"Successfully connected to MongoDB database '{self.database_name}'")
                return

            except ConnectionFailure as e:
                logger.error(f"MongoDB connection attempt {attempt + 1} failed: {e}")
                if attempt < self._connection_retries - 1:
                    await asyncio.sleep(5 * (attempt + 1))  # Linear backoff
                else:
                    raise TransientExternalError(
                        f"Failed to connect to MongoDB after {self._connection_retries} attempts"
                    ) from e

    async def disconnect(self) -> None:
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            self._connected = False
            logger.info("Disconnected from MongoDB")

    async def _create_indexes(self) -> None:
        """Create necessary indexes for job and queue collections"""
        try:
            logger.info("Creating MongoDB indexes...")

            jobs_col = self.db[settings.MONGODB_COLLECTION_JOBS]
            await jobs_col.create_index([("status", ASCENDING)], background=True)
            await jobs_col.create_index([("type", ASCENDING)], background=True)
            await jobs_col.create_index([("created_at", DESCENDING)], background=True)

            queue_col = self.db[settings.MONGODB_COLLECTION_QUEUE]
            await queue_col.create_index(
                [("queue", ASCENDING), ("state", ASCENDING), ("locked_until", ASCENDING)],
                background=True
            )
            await queue_col.create_index([("enqueued_at", ASCENDING)], background=True)

            logger.info("MongoDB indexes created successfully")

        except Exception as e:
            logger.error(f"Error creating indexes: {e}")
            # Don't fail on index creation errors
