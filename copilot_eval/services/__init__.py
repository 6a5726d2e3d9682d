"""
Services module for the evaluation job pipeline
Contains the execution engine, scoring and the collaborator ports
"""
from .db_service import MongoDBService
from .job_repository import JobRepository, InMemoryJobRepository, MongoJobRepository
from .state_service import JobStateService
from .queue_service import (
    QueueTransport,
    InMemoryQueueTransport,
    MongoQueueTransport,
    JobQueuePublisher,
)
from .blob_service import BlobStore, InMemoryBlobStore, FileSystemBlobStore
from .result_service import ResultMaterializer
from .copilot_service import ChatClient, KnowledgeSearchClient, CopilotChatClient, GraphSearchClient
from .evaluation_service import SimilarityScorer
from .execution_service import ExecutionEngine

__all__ = [
    'MongoDBService',
    'JobRepository',
    'InMemoryJobRepository',
    'MongoJobRepository',
    'JobStateService',
    'QueueTransport',
    'InMemoryQueueTransport',
    'MongoQueueTransport',
    'JobQueuePublisher',
    'BlobStore',
    'InMemoryBlobStore',
    'FileSystemBlobStore',
    'ResultMaterializer',
    'ChatClient',
    'KnowledgeSearchClient',
    'CopilotChatClient',
    'GraphSearchClient',
    'SimilarityScorer',
    'ExecutionEngine',
]
