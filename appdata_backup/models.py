"""
Shared data models for workloads, backup units and per-unit results.
"""
from dataclasses import dataclass, field
from typing import List, Optional

# Marker used in order lists to reference a group instead of a container
GROUP_PREFIX = '__grp__'


@dataclass
class Workload:
    """A container as reported by the runtime at the start of a pass."""
    name: str
    running: bool = False
    paused: bool = False
    volumes: List[str] = field(default_factory=list)  # "host:container[:mode]"
    image: Optional[str] = None


@dataclass
class BackupUnit:
    """One element of an ordered backup sequence: a container or a group."""
    name: str
    is_group: bool = False
    workload: Optional[Workload] = None

    @property
    def order_key(self):
        """Key under which this unit appears in a user order list."""
        return f"{GROUP_PREFIX}{self.name}" if self.is_group else self.name

    @classmethod
    def for_workload(cls, workload):
        return cls(name=workload.name, is_group=False, workload=workload)

    @classmethod
    def for_group(cls, group_name):
        return cls(name=group_name, is_group=True)


@dataclass
class BackupResult:
    """Outcome of backing up a single container."""
    name: str
    success: bool
    tolerated: bool = False
    aborted: bool = False
    artifact: Optional[str] = None
    duration: float = 0.0
    error: Optional[str] = None
