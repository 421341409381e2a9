"""
Operator Authorization - token scopes for state-changing commands.

Two scopes, each with its own token:
- UPDATE:     update, recover, manual rollback
- QUARANTINE: acknowledge and clear monitor quarantine

A token for one scope never satisfies the other, so the credential that
ships releases cannot also silence the monitor. Only SHA-256 hashes of the
tokens are configured; raw tokens are never stored.

A scope with no configured hash is open to any local operator. That is
logged once per scope as a warning.
"""

import hashlib
import hmac
import logging
import secrets
import threading
from enum import Enum
from typing import Dict, Optional, Set, Tuple

from .exceptions import AuthorizationDenied

logger = logging.getLogger(__name__)


class Scope(Enum):
    """Authorization scopes."""
    UPDATE = "update"
    QUARANTINE = "quarantine"


# Commands guarded by each scope
COMMAND_SCOPES = {
    'update': Scope.UPDATE,
    'stage': Scope.UPDATE,
    'activate': Scope.UPDATE,
    'recover': Scope.UPDATE,
    'rollback': Scope.UPDATE,
    'quarantine_clear': Scope.QUARANTINE,
}


def hash_token(token: str) -> str:
    """Hash a token using SHA-256."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def generate_token() -> Tuple[str, str]:
    """Create a new random token. Returns (token, sha256 hex)."""
    token = secrets.token_urlsafe(32)
    return token, hash_token(token)


class OperatorAuthorizer:
    """
    Checks operator tokens against per-scope hashes.

    Usage:
        authorizer = OperatorAuthorizer({Scope.UPDATE: update_hash})
        authorizer.authorize(Scope.UPDATE, token)   # raises AuthorizationDenied
    """

    def __init__(self, token_hashes: Optional[Dict[Scope, Optional[str]]] = None):
        self._hashes: Dict[Scope, str] = {}
        for scope, value in (token_hashes or {}).items():
            if value:
                self._hashes[scope] = value.strip().lower()
        self._warned: Set[Scope] = set()
        self._lock = threading.Lock()

    def is_open(self, scope: Scope) -> bool:
        return scope not in self._hashes

    def check(self, scope: Scope, token: Optional[str]) -> Tuple[bool, str]:
        """
        Check a token for a scope without raising.

        Returns:
            (allowed, reason)
        """
        expected = self._hashes.get(scope)
        if expected is None:
            with self._lock:
                if scope not in self._warned:
                    self._warned.add(scope)
                    logger.warning(
                        f"SECURITY: no token configured for scope '{scope.value}'; "
                        "any local operator may use it"
                    )
            return True, "scope open"

        if not token:
            return False, f"token required for scope '{scope.value}'"

        if not hmac.compare_digest(hash_token(token), expected):
            return False, f"token not valid for scope '{scope.value}'"

        return True, "OK"

    def authorize(self, scope: Scope, token: Optional[str]) -> None:
        """Raise AuthorizationDenied unless token is valid for scope."""
        allowed, reason = self.check(scope, token)
        if not allowed:
            logger.warning(f"Authorization denied: {reason}")
            raise AuthorizationDenied(f"Authorization denied: {reason}")

    def authorize_command(self, command: str, token: Optional[str]) -> Scope:
        scope = COMMAND_SCOPES[command]
        self.authorize(scope, token)
        return scope
