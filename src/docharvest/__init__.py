"""
DocHarvest - Batch web document extraction with a crash-recoverable job orchestrator.

Queues extraction jobs against live pages, drives them through pluggable
extraction/render backends under an adaptive concurrency budget, and keeps
queue and results in a persistent store so work resumes after a restart.
"""

__version__ = "0.1.0"
__app_name__ = "docharvest"
