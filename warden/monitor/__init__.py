"""
Continuous integrity monitoring of the Active generation.
"""

from .integrity_monitor import CycleOutcome, CycleReport, IntegrityMonitor
from .quarantine import QuarantineState, QuarantineStore

__all__ = [
    'CycleOutcome',
    'CycleReport',
    'IntegrityMonitor',
    'QuarantineState',
    'QuarantineStore',
]
