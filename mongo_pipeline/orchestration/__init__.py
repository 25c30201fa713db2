"""
Task lifecycle and run loops for the extractor and merger.

The hosting scheduler (or the runner here) calls ``poll()`` / ``put()`` one
at a time per task instance; tasks own their MongoDB connection between
``start()`` and ``stop()``.
"""

from .tasks import ExtractorTask, MergerTask
from .runner import TaskRunner, install_signal_handlers

__all__ = [
    'ExtractorTask',
    'MergerTask',
    'TaskRunner',
    'install_signal_handlers',
]
