"""
Workers Module
==============

Worker fleet management and the worker-side runtime.
"""

from .base import BaseWorker, CallableWorker, WorkerConfig, ProcessingResult, echo_handler
from .fleet import FleetManager, HealthMonitor, HealthReport, WorkerHealth, create_fleet_manager
from .launcher import SessionLauncher, SubprocessLauncher, NullLauncher, create_launcher
from .workspace import WorkerWorkspace

__all__ = [
    "BaseWorker",
    "CallableWorker",
    "WorkerConfig",
    "ProcessingResult",
    "echo_handler",
    "FleetManager",
    "HealthMonitor",
    "HealthReport",
    "WorkerHealth",
    "create_fleet_manager",
    "SessionLauncher",
    "SubprocessLauncher",
    "NullLauncher",
    "create_launcher",
    "WorkerWorkspace",
]
