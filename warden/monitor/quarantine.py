"""
Monitor quarantine state.

Once the monitor has rolled back (or tried to), it stops acting on further
failures until an operator acknowledges the incident. The flag survives
restarts in <state>/quarantine.json.
"""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..constants import Paths
from ..exceptions import ConfigurationError
from ..utils.atomic import atomic_write_json
from ..utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class QuarantineState:
    """Persisted quarantine flag and the incident that raised it."""
    active: bool = False
    entered_at: Optional[str] = None
    reason: Optional[str] = None
    path: Optional[str] = None
    version: Optional[str] = None           # generation that failed
    rolled_back_to: Optional[str] = None
    cleared_at: Optional[str] = None
    cleared_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'active': self.active,
            'entered_at': self.entered_at,
            'reason': self.reason,
            'path': self.path,
            'version': self.version,
            'rolled_back_to': self.rolled_back_to,
            'cleared_at': self.cleared_at,
            'cleared_by': self.cleared_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QuarantineState':
        return cls(
            active=bool(data.get('active', False)),
            entered_at=data.get('entered_at'),
            reason=data.get('reason'),
            path=data.get('path'),
            version=data.get('version'),
            rolled_back_to=data.get('rolled_back_to'),
            cleared_at=data.get('cleared_at'),
            cleared_by=data.get('cleared_by'),
        )


class QuarantineStore:
    """Loads and atomically replaces quarantine.json."""

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / Paths.QUARANTINE_FILE
        self._lock = threading.Lock()

    def load(self) -> QuarantineState:
        if not self.path.exists():
            return QuarantineState()
        try:
            with open(self.path, 'r') as f:
                return QuarantineState.from_dict(json.load(f))
        except (OSError, ValueError, AttributeError) as e:
            # An unreadable flag must not silently re-arm automatic rollback
            logger.critical(f"Quarantine state {self.path} unreadable ({e}); assuming quarantined")
            return QuarantineState(active=True, reason='quarantine state unreadable')

    def is_active(self) -> bool:
        return self.load().active

    def enter(
        self,
        reason: str,
        path: Optional[str] = None,
        version: Optional[str] = None,
        rolled_back_to: Optional[str] = None,
    ) -> QuarantineState:
        state = QuarantineState(
            active=True,
            entered_at=utc_now(),
            reason=reason,
            path=path,
            version=version,
            rolled_back_to=rolled_back_to,
        )
        with self._lock:
            atomic_write_json(self.path, state.to_dict())
        logger.warning(f"Monitor quarantine entered: {reason} ({path})")
        return state

    def clear(self, operator: str) -> QuarantineState:
        """Record operator acknowledgment and clear the flag."""
        if not operator or not operator.strip():
            raise ConfigurationError("An operator name is required to clear quarantine")
        with self._lock:
            state = self.load()
            state.active = False
            state.cleared_at = utc_now()
            state.cleared_by = operator.strip()
            atomic_write_json(self.path, state.to_dict())
        logger.info(f"Monitor quarantine cleared by {operator}")
        return state
