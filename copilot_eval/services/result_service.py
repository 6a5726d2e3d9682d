"""
Result Materialization Service
Persists job results to the blob store and hands back a lightweight reference
"""
import json
from datetime import timedelta
from typing import Optional
import logging
from copilot_eval.config.settings import settings
from copilot_eval.models.job import BlobReference, JobResults
from copilot_eval.services.blob_service import BlobStore
from copilot_eval.utils.helpers import utcnow
from copilot_eval.utils.monitoring import Telemetry

logger = logging.getLogger(__name__)


class ResultMaterializer:
    """
    Writes JobResults as canonical JSON under <job_id>/results.json

    Persistence is best-effort: an unconfigured or failing store yields None
    and the job still completes.
    """

    def __init__(self,
                 blob_store: Optional[BlobStore],
                 container: Optional[str] = None,
                 retention_days: Optional[int] = None,
                 inline_threshold_bytes: Optional[int] = None,
                 telemetry: Optional[Telemetry] = None):
        self.blob_store = blob_store
        self.container = container or settings.RESULTS_CONTAINER
        self.retention_days = retention_days if retention_days is not None else settings.RESULTS_RETENTION_DAYS
        self.inline_threshold_bytes = (
            inline_threshold_bytes if inline_threshold_bytes is not None
            else settings.BLOB_INLINE_THRESHOLD_BYTES
        )
        self.telemetry = telemetry or Telemetry()

    @staticmethod
    def serialize(results: JobResults) -> bytes:
        """Canonical JSON: sorted keys, 2-space indent, UTF-8"""
        return json.dumps(
            results.model_dump(mode="json"), sort_keys=True, indent=2, ensure_ascii=False
        ).encode("utf-8")

    @staticmethod
    def results_key(job_id: str) -> str:
        return f"{job_id}/results.json"

    async def materialize(self, job_id: str, results: JobResults) -> Optional[BlobReference]:
        """
        Store results for job_id

        Returns:
            Reference to the stored payload, or None when nothing was stored
        """
        if self.blob_store is None:
            logger.warning(f"Blob store not configured, results for job {job_id} not materialized")
            return None

        payload = self.serialize(results)
        if len(payload) < self.inline_threshold_bytes:
            logger.info(f"Results for job {job_id} ({len(payload)} bytes) below inline threshold, not materialized")
            return None

        try:
            with self.telemetry.span("results.materialize"):
                reference = await self.blob_store.write(
                    self.container,
                    self.results_key(job_id),
                    payload,
                    content_type="application/json",
                    expires_at=utcnow() + timedelta(days=self.retention_days),
                )
        except Exception as e:
            logger.error(f"Failed to materialize results for job {job_id}: {e}")
            return None

        self.telemetry.increment("results.materialized")
        logger.info(f"Materialized results for job {job_id}: {reference.container}/{reference.blob_name} "
                    f"({reference.size_bytes} bytes)")
        return reference

    async def load(self, reference: BlobReference) -> JobResults:
        """Read a materialized payload back"""
        if self.blob_store is None:
            raise FileNotFoundError("Blob store not configured")
        data = await self.blob_store.read(reference.container, reference.blob_name)
        return JobResults.model_validate_json(data)
