"""
CLI Module for Generation Warden

Provides the operator command-line tool:
- wardenctl: update, recover, verify, status, ledger, quarantine, run

Usage:
    python -m warden.cli.wardenctl status
    python -m warden.cli.wardenctl update /srv/incoming/1.1.0
"""

from .wardenctl import main as wardenctl_main

__all__ = [
    'wardenctl_main',
]
