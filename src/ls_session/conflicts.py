"""Detection of other installed components that claim the same capability.

Two components registering for the same kind of file fight over it, so the
host is told about the others whenever the installed set changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from cachetools import LRUCache

logger = logging.getLogger(__name__)

# Installed-set fingerprints remembered by a monitor
REPORT_CACHE_SIZE = 32


@dataclass(frozen=True)
class ComponentDescriptor:
    """An installed component and the capabilities it declares."""

    id: str
    capabilities: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComponentDescriptor:
        """Create a descriptor from {"id": ..., "capabilities": [...]}."""
        return cls(id=data["id"], capabilities=frozenset(data.get("capabilities", ())))


@dataclass(frozen=True)
class ConflictReport:
    """Components other than ourselves that declare the capability."""

    capability: str
    conflicting_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicting_ids)


def find_conflicts(
    installed: Iterable[ComponentDescriptor], self_id: str, capability: str
) -> ConflictReport:
    """Compute the components that conflict with this one.

    Args:
        installed: Every installed component, ourselves included.
        self_id: Our own component id, never reported.
        capability: Capability we declare.

    Returns:
        Report naming the other components declaring the same capability.
    """
    conflicting = frozenset(
        c.id for c in installed if c.id != self_id and capability in c.capabilities
    )
    return ConflictReport(capability, conflicting)


class ConflictMonitor:
    """Re-runs conflict detection whenever the installed set changes.

    Reports are memoised per installed set; the listener is called every
    time a change leaves conflicts in place.
    """

    def __init__(
        self,
        self_id: str,
        capability: str,
        on_conflicts: Callable[[ConflictReport], None] | None = None,
    ) -> None:
        self.self_id = self_id
        self.capability = capability
        self._on_conflicts = on_conflicts
        self._reports: LRUCache[frozenset[ComponentDescriptor], ConflictReport] = LRUCache(
            maxsize=REPORT_CACHE_SIZE
        )
        self.last_report: ConflictReport | None = None

    def check(self, installed: Iterable[ComponentDescriptor]) -> ConflictReport:
        """Detect conflicts in the installed set and notify the listener."""
        key = frozenset(installed)
        report = self._reports.get(key)
        if report is None:
            report = find_conflicts(key, self.self_id, self.capability)
            self._reports[key] = report

        self.last_report = report
        if report.has_conflicts:
            logger.warning(
                "Components conflicting on %r: %s",
                self.capability,
                ", ".join(sorted(report.conflicting_ids)),
            )
            if self._on_conflicts is not None:
                self._on_conflicts(report)
        return report
