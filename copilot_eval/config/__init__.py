"""
Configuration module for the evaluation job worker
"""
from .settings import Settings, settings

__all__ = ['Settings', 'settings']
