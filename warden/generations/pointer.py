"""
Pointer record - the single source of truth for which generation serves.

Two pieces of on-disk state move together:

    <state>/current        symlink -> generations/<version>/tree
    <state>/pointer.json   PointerRecord (current, rollback target, retention)

Both are replaced with os.replace() of a fully written temporary, so a
reader always sees either the old or the new value. If the record cannot be
written after the symlink moved, the symlink is put back.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..constants import Paths
from ..exceptions import ActivationFailed
from ..utils.atomic import atomic_write_json, fsync_directory
from ..utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class PointerRecord:
    """Versioned record of the serving generation and its safety net."""
    current: Optional[str] = None
    rollback_target: Optional[str] = None
    retention_remaining: Optional[int] = None   # clean cycles before retiring the target
    revision: int = 0
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current': self.current,
            'rollback_target': self.rollback_target,
            'retention_remaining': self.retention_remaining,
            'revision': self.revision,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PointerRecord':
        remaining = data.get('retention_remaining')
        return cls(
            current=data.get('current'),
            rollback_target=data.get('rollback_target'),
            retention_remaining=int(remaining) if remaining is not None else None,
            revision=int(data.get('revision', 0)),
            updated_at=data.get('updated_at'),
        )

    def advance(self, **changes) -> 'PointerRecord':
        """A copy with the given fields changed and the revision bumped."""
        data = self.to_dict()
        data.update(changes)
        data['revision'] = self.revision + 1
        data['updated_at'] = utc_now()
        return PointerRecord.from_dict(data)


class PointerStore:
    """Reads and atomically replaces the pointer record and current symlink."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.pointer_path = self.state_dir / Paths.POINTER_FILE
        self.current_link = self.state_dir / Paths.CURRENT_LINK

    def load(self) -> PointerRecord:
        """
        Read the pointer record; an absent file means nothing was activated.

        Raises:
            ActivationFailed: if the record exists but cannot be parsed
        """
        if not self.pointer_path.exists():
            return PointerRecord()
        try:
            with open(self.pointer_path, 'r') as f:
                return PointerRecord.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            raise ActivationFailed(f"Pointer record {self.pointer_path} is unreadable: {e}")

    def _link_target(self, location: Path) -> str:
        # Relative so the state directory can be moved as a whole
        return os.path.relpath(str(location), str(self.state_dir))

    def _read_link(self) -> Optional[str]:
        try:
            return os.readlink(self.current_link)
        except OSError:
            return None

    def _swap_link(self, target: Optional[str]) -> None:
        if target is None:
            if os.path.lexists(self.current_link):
                os.unlink(self.current_link)
            fsync_directory(self.state_dir)
            return

        self.state_dir.mkdir(parents=True, exist_ok=True)
        temp_link = self.state_dir / f".{Paths.CURRENT_LINK}.{os.getpid()}.tmp"
        if os.path.lexists(temp_link):
            os.unlink(temp_link)
        os.symlink(target, temp_link)
        try:
            os.replace(temp_link, self.current_link)
        except OSError:
            os.unlink(temp_link)
            raise
        fsync_directory(self.state_dir)

    def commit(self, record: PointerRecord, location: Optional[Path] = None) -> None:
        """
        Make record the new pointer state.

        With a location the current symlink is switched first; the record
        write follows. Without one only the record changes.

        Raises:
            OSError: if either step failed; the prior state is left in place
        """
        previous_target = self._read_link()
        switched = False

        if location is not None:
            self._swap_link(self._link_target(location))
            switched = True

        try:
            atomic_write_json(self.pointer_path, record.to_dict())
        except OSError:
            if switched:
                logger.error("Pointer record write failed; restoring current symlink")
                self._swap_link(previous_target)
            raise

        logger.debug(
            f"Pointer revision {record.revision}: current={record.current} "
            f"rollback_target={record.rollback_target}"
        )

    def resolve_current(self) -> Optional[Path]:
        """Where the service-facing symlink points, or None."""
        target = self._read_link()
        if target is None:
            return None
        return (self.state_dir / target).resolve()

    def repair_link(self, location: Optional[Path]) -> bool:
        """Point current at location if it disagrees. Returns True if changed."""
        wanted = self._link_target(location) if location is not None else None
        if self._read_link() == wanted:
            return False
        logger.warning(f"Repairing current symlink -> {wanted}")
        self._swap_link(wanted)
        return True
