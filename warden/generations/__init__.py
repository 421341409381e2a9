"""
Generation management for Generation Warden.

Staging of verified bundles, the pointer record, and atomic activation,
rollback and retention of generations.
"""

from .model import Generation, GenerationStatus, RETAINED_STATUSES
from .substrate import DeploymentSubstrate, DirectorySubstrate
from .registry import GenerationRegistry
from .pointer import PointerRecord, PointerStore
from .lock import ActivationLock
from .stage_manager import StageManager
from .activator import (
    ActivationOutcome,
    ActivationSession,
    Activator,
)

__all__ = [
    'Generation',
    'GenerationStatus',
    'RETAINED_STATUSES',
    'DeploymentSubstrate',
    'DirectorySubstrate',
    'GenerationRegistry',
    'PointerRecord',
    'PointerStore',
    'StageManager',
    'ActivationLock',
    'ActivationOutcome',
    'ActivationSession',
    'Activator',
]
