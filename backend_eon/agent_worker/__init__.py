"""
Agent worker package: 24/7 background orchestration.

Owns the watcher context, runs the detection/settlement pipeline, schedules
periodic tasks, and coordinates shutdown and health checks.
"""

from backend_eon.agent_worker.bootstrap import build_context, build_service
from backend_eon.agent_worker.service import WatcherConfig, WatcherContext, WatcherService

__all__ = ["WatcherConfig", "WatcherContext", "WatcherService", "build_context", "build_service"]
