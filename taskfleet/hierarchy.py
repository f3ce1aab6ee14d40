"""
Hierarchy Policy
================

Delegation limits for the worker tree plus the global emergency brake.

Layer 0 is the root and a worker on layer L sits at depth L. The deepest
layer that may be provisioned is ``max_depth`` itself.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class LevelConfig:
    """Per-layer delegation rules"""
    level: int
    role: str
    can_delegate: bool = False
    max_subordinates: int = 0
    subordinate_role: Optional[str] = None


@dataclass
class EmergencyBrake:
    """Global limits that stop a runaway fleet"""
    max_total_instances: int = 10
    max_tasks_per_worker: int = 5
    timeout_minutes: float = 60


@dataclass
class HealthMonitoringConfig:
    """Liveness detection and auto-recovery settings"""
    enabled: bool = True
    heartbeat_interval_sec: float = 30
    unresponsive_threshold_sec: float = 90
    check_interval_sec: float = 30
    max_consecutive_failures: int = 3
    auto_restart: bool = True
    alert_on_faulty: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "HealthMonitoringConfig":
        section = config.get("health_monitoring", {})
        return cls(
            enabled=bool(section.get("enabled", True)),
            heartbeat_interval_sec=float(section.get("heartbeat_interval_sec", 30)),
            unresponsive_threshold_sec=float(section.get("unresponsive_threshold_sec", 90)),
            check_interval_sec=float(section.get("check_interval_sec", 30)),
            max_consecutive_failures=int(section.get("max_consecutive_failures", 3)),
            auto_restart=bool(section.get("auto_restart", True)),
            alert_on_faulty=bool(section.get("alert_on_faulty", True)),
        )


@dataclass
class HierarchyPolicy:
    """Delegation tree limits"""
    max_depth: int = 2
    levels: list[LevelConfig] = field(default_factory=list)
    emergency_brake: EmergencyBrake = field(default_factory=EmergencyBrake)

    def level(self, layer: int) -> Optional[LevelConfig]:
        for level in self.levels:
            if level.level == layer:
                return level
        return None

    def role_for(self, layer: int) -> str:
        level = self.level(layer)
        if level is not None:
            return level.role
        # Fall back to what the parent layer says its subordinates are called
        parent = self.level(layer - 1)
        if parent is not None and parent.subordinate_role:
            return parent.subordinate_role
        return f"layer-{layer}"

    def can_delegate(self, layer: int) -> bool:
        level = self.level(layer)
        return bool(level and level.can_delegate)

    def max_subordinates(self, layer: int) -> int:
        level = self.level(layer)
        return level.max_subordinates if level else 0

    def within_depth(self, layer: int) -> bool:
        return 0 <= layer <= self.max_depth

    @classmethod
    def from_config(cls, config: dict) -> "HierarchyPolicy":
        section = config.get("hierarchy", {})
        levels = [
            LevelConfig(
                level=int(entry["level"]),
                role=str(entry.get("role", f"layer-{entry['level']}")),
                can_delegate=bool(entry.get("can_delegate", False)),
                max_subordinates=int(entry.get("max_subordinates", 0)),
                subordinate_role=entry.get("subordinate_role"),
            )
            for entry in section.get("levels", [])
        ]
        brake = section.get("emergency_brake", {})
        return cls(
            max_depth=int(section.get("max_depth", 2)),
            levels=sorted(levels, key=lambda level: level.level),
            emergency_brake=EmergencyBrake(
                max_total_instances=int(brake.get("max_total_instances", 10)),
                max_tasks_per_worker=int(brake.get("max_tasks_per_worker", 5)),
                timeout_minutes=float(brake.get("timeout_minutes", 60)),
            ),
        )
