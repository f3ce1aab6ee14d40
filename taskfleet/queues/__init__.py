"""
Queue Module
============

Shared task queue and its state machine.
"""

from .manager import TaskQueue, TaskStats, AUDIT_TASK_TYPE, create_task_queue

__all__ = [
    "TaskQueue",
    "TaskStats",
    "AUDIT_TASK_TYPE",
    "create_task_queue",
]
