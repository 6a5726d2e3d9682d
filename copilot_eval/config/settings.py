"""
Centralized configuration management
Loads settings from environment variables
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from typing import Optional
# Load environment variables from .env file
env_path = Path(__file__).parent.parent.parent / '.env'

if env_path.exists():
    load_dotenv(env_path)


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables"""
    # Queue Configuration
    QUEUE_BACKEND: str = os.getenv("QUEUE_BACKEND", "memory")  # Options: memory, mongodb
    QUEUE_NAME: str = os.getenv("QUEUE_NAME", "job-messages")
    QUEUE_MAX_CONCURRENT_CALLS: int = int(os.getenv("QUEUE_MAX_CONCURRENT_CALLS", "5"))
    QUEUE_PREFETCH_COUNT: int = int(os.getenv("QUEUE_PREFETCH_COUNT", "10"))
    QUEUE_LOCK_DURATION_SECONDS: float = float(os.getenv("QUEUE_LOCK_DURATION_SECONDS", "60"))
    QUEUE_MAX_AUTO_LOCK_RENEWAL_SECONDS: float = float(os.getenv("QUEUE_MAX_AUTO_LOCK_RENEWAL_SECONDS", "600"))
    QUEUE_MAX_DELIVERY_COUNT: int = int(os.getenv("QUEUE_MAX_DELIVERY_COUNT", "3"))
    QUEUE_DUPLICATE_DETECTION_WINDOW_SECONDS: float = float(
        os.getenv("QUEUE_DUPLICATE_DETECTION_WINDOW_SECONDS", "600")
    )
    QUEUE_RECEIVE_WAIT_SECONDS: float = float(os.getenv("QUEUE_RECEIVE_WAIT_SECONDS", "5"))
    # Job Repository
    JOB_REPOSITORY_BACKEND: str = os.getenv("JOB_REPOSITORY_BACKEND", "memory")  # Options: memory, mongodb
    # MongoDB Configuration
    MONGODB_URI: str = os.getenv("MONGODB_URI", "mongodb://localhost:27017/")
    MONGODB_DATABASE: str = os.getenv("MONGODB_DATABASE", "copilot_eval")
    MONGODB_COLLECTION_JOBS: str = os.getenv("MONGODB_COLLECTION_JOBS", "jobs")
    MONGODB_COLLECTION_QUEUE: str = os.getenv("MONGODB_COLLECTION_QUEUE", "job_messages")
    # Blob Storage (unset root = blob store not configured)
    BLOB_STORAGE_ROOT: Optional[str] = os.getenv("BLOB_STORAGE_ROOT")
    RESULTS_CONTAINER: str = os.getenv("RESULTS_CONTAINER", "job-results")
    RESULTS_RETENTION_DAYS: int = int(os.getenv("RESULTS_RETENTION_DAYS", "30"))
    BLOB_INLINE_THRESHOLD_BYTES: int = int(os.getenv("BLOB_INLINE_THRESHOLD_BYTES", "0"))
    # Copilot Chat / Knowledge Search collaborators
    COPILOT_API_BASE_URL: Optional[str] = os.getenv("COPILOT_API_BASE_URL")
    COPILOT_ACCESS_TOKEN: Optional[str] = os.getenv("COPILOT_ACCESS_TOKEN")
    COPILOT_TIMEZONE: str = os.getenv("COPILOT_TIMEZONE", "UTC")
    COPILOT_REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("COPILOT_REQUEST_TIMEOUT_SECONDS", "120"))
    KNOWLEDGE_SEARCH_MAX_RESULTS: int = int(os.getenv("KNOWLEDGE_SEARCH_MAX_RESULTS", "3"))
    # Execution Configuration
    DEFAULT_SIMILARITY_THRESHOLD: float = float(os.getenv("DEFAULT_SIMILARITY_THRESHOLD", "0.8"))
    PROGRESS_UPDATE_INTERVAL: int = int(os.getenv("PROGRESS_UPDATE_INTERVAL", "5"))
    SAMPLE_DATA_FALLBACK: bool = _get_bool("SAMPLE_DATA_FALLBACK", "true")
    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE")

    def validate(self):
        """Validate required settings"""
        errors = []
        for backend_name in ("QUEUE_BACKEND", "JOB_REPOSITORY_BACKEND"):
            backend = getattr(self, backend_name)
            if backend not in ("memory", "mongodb"):
                errors.append(f"{backend_name} must be 'memory' or 'mongodb' (got '{backend}')")
            elif backend == "mongodb" and not self.MONGODB_URI:
                errors.append(f"MONGODB_URI is required when {backend_name}=mongodb")
        if self.QUEUE_MAX_CONCURRENT_CALLS < 1:
            errors.append("QUEUE_MAX_CONCURRENT_CALLS must be at least 1")
        if self.QUEUE_MAX_DELIVERY_COUNT < 1:
            errors.append("QUEUE_MAX_DELIVERY_COUNT must be at least 1")
        if not 0.0 <= self.DEFAULT_SIMILARITY_THRESHOLD <= 1.0:
            errors.append("DEFAULT_SIMILARITY_THRESHOLD must be between 0 and 1")
        if self.COPILOT_API_BASE_URL and not self.COPILOT_ACCESS_TOKEN:
            errors.append("COPILOT_ACCESS_TOKEN is required when COPILOT_API_BASE_URL is set")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    def __repr__(self):
        """String representation hiding sensitive values"""
        return (
            f"Settings("
            f"QUEUE_BACKEND={self.QUEUE_BACKEND}, "
            f"QUEUE_NAME={self.QUEUE_NAME}, "
            f"JOB_REPOSITORY_BACKEND={self.JOB_REPOSITORY_BACKEND}, "
            f"BLOB_STORAGE_ROOT={self.BLOB_STORAGE_ROOT}, "
            f"COPILOT_API_BASE_URL={self.COPILOT_API_BASE_URL})"
        )


# Create singleton instance
settings = Settings()
# Validate on import (can be disabled for testing)
if os.getenv("SKIP_CONFIG_VALIDATION") != "true":
    try:
        settings.validate()
    except ValueError as e:
        print(f"Configuration Error: {e}")
        print("Please check your .env file")
