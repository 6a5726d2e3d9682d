"""
Copilot Evaluation Job Worker
Asynchronous pipeline that executes, scores and materializes evaluation jobs
"""
import logging
import sys
from copilot_eval.config.settings import settings
# Package version

__version__ = "1.0.0"

_handlers = [logging.StreamHandler(sys.stdout)]
if settings.LOG_FILE:
    _handlers.append(logging.FileHandler(settings.LOG_FILE, mode='a'))

# Configure package-level logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=_handlers
    )
# Suppress verbose logs from third-party libraries
logging.getLogger('motor').setLevel(logging.WARNING)
logging.getLogger('pymongo').setLevel(logging.WARNING)
logging.getLogger('aiohttp').setLevel(logging.WARNING)
logging.getLogger('asyncio').setLevel(logging.WARNING)
