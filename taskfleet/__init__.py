"""
taskfleet - Coordination Core for Hierarchical Worker Fleets
============================================================

A durable task queue and worker fleet manager with:
- Atomic task claiming across processes (SQLite or locked JSON files)
- Hierarchical worker provisioning with depth and fan-out limits
- Heartbeat-driven health checks with bounded auto-restart
- Startup recovery of work orphaned by crashed workers
"""

__version__ = "0.1.0"
__author__ = "taskfleet Team"
