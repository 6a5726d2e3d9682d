"""
Job Repository
Key-value-by-id storage for job records with lifecycle-checked updates
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import logging
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError
from copilot_eval.models.job import Job
from copilot_eval.services.db_service import MongoDBService
from copilot_eval.config.settings import settings
from copilot_eval.utils.errors import ConfigurationError, InvalidStateTransitionError
from copilot_eval.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class JobRepository(ABC):
    """
    Storage port for job records

    update() is the only write path for an existing job. It rejects any
    status change the lifecycle table forbids and replaces the whole record
    in one write.
    """

    @abstractmethod
    async def create(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_by_id(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def update(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def list_jobs(self, page: int = 1, page_size: int = 20) -> List[Job]:
        """Newest first"""
        ...

    @staticmethod
    def _check_transition(stored: Job, job: Job) -> None:
        # Same-status writes are only allowed for progress on a running job
        if not stored.status.can_transition_to(job.status):
            raise InvalidStateTransitionError(job.id, stored.status, job.status)


class InMemoryJobRepository(JobRepository):
    """Dict-backed repository; stores copies so callers cannot mutate records"""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise ConfigurationError(f"Job {job.id} already exists")
            self._jobs[job.id] = job.model_copy(deep=True)
        logger.debug(f"Created job {job.id}")
        return job

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            stored = self._jobs.get(job_id)
            return stored.model_copy(deep=True) if stored else None

    async def update(self, job: Job) -> Job:
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                raise KeyError(f"Job {job.id} not found")
            self._check_transition(stored, job)
            updated = job.model_copy(update={"updated_at": utcnow()}, deep=True)
            self._jobs[job.id] = updated
        logger.debug(f"Updated job {job.id} to {updated.status.value}")
        return updated.model_copy(deep=True)

    async def list_jobs(self, page: int = 1, page_size: int = 20) -> List[Job]:
        async with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        start = max(page - 1, 0) * page_size
        return [j.model_copy(deep=True) for j in jobs[start:start + page_size]]


class MongoJobRepository(JobRepository):
    """
    MongoDB-backed repository
    Updates are a conditional replace on the stored status, so a concurrent
    status change surfaces as InvalidStateTransitionError instead of a lost update
    """

    def __init__(self, db_service: MongoDBService, collection_name: Optional[str] = None):
        self.db_service = db_service
        self.collection_name = collection_name or settings.MONGODB_COLLECTION_JOBS

    @property
    def collection(self):
        return self.db_service.db[self.collection_name]

    async def create(self, job: Job) -> Job:
        try:
            await self.collection.insert_one(job.to_document())
            logger.info(f"Created job {job.id} ({job.type.value})")
        except DuplicateKeyError as e:
            raise ConfigurationError(f"Job {job.id} already exists") from e
        return job

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        doc = await self.collection.find_one({"_id": job_id})
        if doc:
            return Job.from_document(doc)
        return None

    async def update(self, job: Job) -> Job:
        stored = await self.get_by_id(job.id)
        if stored is None:
            raise KeyError(f"Job {job.id} not found")
        self._check_transition(stored, job)

        updated = job.model_copy(update={"updated_at": utcnow()})
        result = await self.collection.replace_one(
            {"_id": job.id, "status": stored.status.value},
            updated.to_document()
        )
        if result.matched_count == 0:
            # Status changed between read and write
            current = await self.get_by_id(job.id)
            raise InvalidStateTransitionError(
                job.id, current.status if current else stored.status, job.status
            )
        logger.debug(f"Updated job {job.id} to {updated.status.value}")
        return updated

    async def list_jobs(self, page: int = 1, page_size: int = 20) -> List[Job]:
        cursor = (
            self.collection.find({})
            .sort("created_at", DESCENDING)
            .skip(max(page - 1, 0) * page_size)
            .limit(page_size)
        )
        jobs = []
        async for doc in cursor:
            jobs.append(Job.from_document(doc))
        return jobs
