"""Bridge session state container.

One `BridgeContext` exists per bridge session and is handed to every
collaborator (connection manager, capture entry point) instead of being read
from process globals.

State Fields:
    settings: Installer configuration and tunables
    enabled: Capture switch; flipped by collector ``disable``/``enable`` commands
    session_id: Random id of this session (log correlation only)
    execution_counts: Location key -> number of captured calls at that location

Design Note:
    The capture switch is read on every captured call and written only from
    the event loop, so no locking is involved.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from .config import Settings

__all__ = ["BridgeContext"]


@dataclass
class BridgeContext:
    settings: Settings
    enabled: bool = True
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    execution_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def project_id(self) -> str:
        return self.settings.project_id

    @property
    def project_path(self) -> Optional[str]:
        return self.settings.CONSOLELOG_PROJECT_PATH

    @property
    def framework(self) -> str:
        return self.settings.CONSOLELOG_FRAMEWORK

    def next_execution_count(self, location_key: str) -> int:
        """Increment and return the execution counter for ``location_key``."""
        count = self.execution_counts.get(location_key, 0) + 1
        self.execution_counts[location_key] = count
        return count
