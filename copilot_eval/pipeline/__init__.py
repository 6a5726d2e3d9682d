"""
Pipeline module for the evaluation job worker
Contains the queue consumer, dead-letter recovery and the worker host
"""
from .processor import JobQueueConsumer
from .recovery_manager import DeadLetterCompensator
from .worker import JobWorker

__all__ = [
    'JobQueueConsumer',
    'DeadLetterCompensator',
    'JobWorker'
]
