"""
Event Ledger - Append-only, hash-chained record of every warden transition.

Each entry stores the hash of the previous entry; its own hash covers that
previous hash concatenated with the canonical JSON of its body, so changing
any past entry breaks every link after it. Entries may additionally carry an
Ed25519 signature over their hash, made with a ledger key that is distinct
from the artifact-signing key.

The ledger is a JSON-lines file. Appends are serialized with a thread lock
and an exclusive flock on the file; the tail is re-read under the flock so
the daemon and CLI invocations extend the same chain.
"""

import fcntl
import hashlib
import json
import logging
import os
import shutil
import stat
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import nacl.encoding
import nacl.exceptions
import nacl.signing

from ..constants import BufferSizes, GENESIS_HASH, Permissions
from ..exceptions import ConfigurationError, LedgerCorrupt
from ..utils.clock import utc_now
from ..integrity.verifier import VerificationResult

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of ledger events."""
    VERIFIED = "Verified"
    VERIFICATION_FAILED = "VerificationFailed"
    STAGED = "Staged"
    STAGE_FAILED = "StageFailed"
    ACTIVATED = "Activated"
    ACTIVATION_REJECTED = "ActivationRejected"   # lock held by someone else
    ACTIVATION_FAILED = "ActivationFailed"
    ROLLED_BACK = "RolledBack"
    ROLLBACK_FAILED = "RollbackFailed"
    RECOVERED = "Recovered"
    RETIRED = "Retired"
    INTEGRITY_FAILURE = "IntegrityFailure"
    QUARANTINE_ENTERED = "QuarantineEntered"
    QUARANTINE_CLEARED = "QuarantineCleared"
    MONITOR_STARTED = "MonitorStarted"
    MONITOR_STOPPED = "MonitorStopped"
    AUTHORIZATION_DENIED = "AuthorizationDenied"


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(',', ':'))


def _normalize_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # Round-trip so the hashed form equals what a reader will parse back
    return json.loads(json.dumps(payload or {}, default=str))


@dataclass(frozen=True)
class LedgerEntry:
    """A single immutable ledger entry."""
    sequence: int
    timestamp: str
    kind: EventKind
    payload: Dict[str, Any]
    prev_hash: str
    entry_hash: str
    signature: Optional[str] = None    # hex Ed25519 signature over entry_hash

    @staticmethod
    def compute_hash(
        prev_hash: str,
        sequence: int,
        timestamp: str,
        kind: EventKind,
        payload: Dict[str, Any],
    ) -> str:
        """SHA-256 over previous hash + canonical body."""
        body = _canonical({
            'sequence': sequence,
            'timestamp': timestamp,
            'kind': kind.value,
            'payload': payload,
        })
        return hashlib.sha256((prev_hash + body).encode('utf-8')).hexdigest()

    def recompute_hash(self) -> str:
        return self.compute_hash(
            self.prev_hash, self.sequence, self.timestamp, self.kind, self.payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'sequence': self.sequence,
            'timestamp': self.timestamp,
            'kind': self.kind.value,
            'payload': self.payload,
            'prev_hash': self.prev_hash,
            'entry_hash': self.entry_hash,
        }
        if self.signature is not None:
            data['signature'] = self.signature
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            sequence=int(data['sequence']),
            timestamp=data['timestamp'],
            kind=EventKind(data['kind']),
            payload=data.get('payload') or {},
            prev_hash=data['prev_hash'],
            entry_hash=data['entry_hash'],
            signature=data.get('signature'),
        )

    @classmethod
    def from_line(cls, line: Union[str, bytes]) -> 'LedgerEntry':
        if isinstance(line, bytes):
            line = line.decode('utf-8')
        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError("ledger line is not an object")
        return cls.from_dict(data)


# =============================================================================
# KEY MATERIAL
# =============================================================================

def load_signing_key(key_path: Union[str, Path]) -> nacl.signing.SigningKey:
    """Load a ledger signing key (raw 32 bytes or hex)."""
    try:
        with open(key_path, 'rb') as f:
            key_data = f.read()
        if len(key_data) != 32:
            key_data = bytes.fromhex(key_data.decode('ascii').strip())
        return nacl.signing.SigningKey(key_data)
    except (OSError, ValueError, nacl.exceptions.CryptoError) as e:
        raise ConfigurationError(f"Cannot load ledger signing key {key_path}: {e}")


def generate_signing_key(key_path: Union[str, Path]) -> nacl.signing.SigningKey:
    """
    Create a new ledger signing key at key_path with 0600 permissions.

    SECURITY: the file is created with O_EXCL and its final mode in one
    step, so the key is never readable by other users and an existing key
    is never overwritten.
    """
    signing_key = nacl.signing.SigningKey.generate()

    key_dir = os.path.dirname(str(key_path))
    if key_dir:
        os.makedirs(key_dir, mode=Permissions.SECURE_DIR, exist_ok=True)

    fd = os.open(
        str(key_path),
        os.O_WRONLY | os.O_CREAT | os.O_EXCL,
        stat.S_IRUSR | stat.S_IWUSR,
    )
    try:
        os.write(fd, bytes(signing_key))
    finally:
        os.close(fd)

    logger.info(f"Generated new ledger signing key at {key_path}")
    return signing_key


def verify_key_hex(signing_key: nacl.signing.SigningKey) -> str:
    return signing_key.verify_key.encode(encoder=nacl.encoding.HexEncoder).decode()


# =============================================================================
# LEDGER
# =============================================================================

def _reverse_lines(f, chunk_size: int) -> Iterator[bytes]:
    """Yield the non-empty lines of a binary file, last line first."""
    f.seek(0, os.SEEK_END)
    position = f.tell()
    buffer = b''
    while position > 0:
        read_size = min(chunk_size, position)
        position -= read_size
        f.seek(position)
        buffer = f.read(read_size) + buffer
        lines = buffer.split(b'\n')
        buffer = lines[0]
        for line in reversed(lines[1:]):
            if line.strip():
                yield line
    if buffer.strip():
        yield buffer


class Ledger:
    """
    Tamper-evident ledger.

    Usage:
        ledger = Ledger('/var/lib/generation-warden/ledger.jsonl')
        ledger.append(EventKind.ACTIVATED, {'version': '1.1.0'})
        result = ledger.verify_chain()
    """

    def __init__(
        self,
        path: Union[str, Path],
        signing_key: Optional[nacl.signing.SigningKey] = None,
        verify_key: Optional[nacl.signing.VerifyKey] = None,
        clock: Callable[[], str] = utc_now,
    ):
        self.path = Path(path)
        self._signing_key = signing_key
        if verify_key is None and signing_key is not None:
            verify_key = signing_key.verify_key
        self._verify_key = verify_key
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def signed(self) -> bool:
        return self._signing_key is not None

    def _read_tail(self, f) -> Tuple[str, int]:
        """Return (last entry hash, next sequence) from an open file."""
        for line in _reverse_lines(f, BufferSizes.LEDGER_TAIL_CHUNK):
            try:
                entry = LedgerEntry.from_line(line)
            except (ValueError, KeyError, TypeError) as e:
                logger.critical(
                    f"Ledger tail of {self.path} is unreadable ({e}); "
                    "chaining onto the last readable entry"
                )
                continue
            return entry.entry_hash, entry.sequence + 1
        return GENESIS_HASH, 0

    def append(self, kind: EventKind, payload: Optional[Dict[str, Any]] = None) -> LedgerEntry:
        """
        Append an event and return the written entry.

        Raises:
            OSError: if the entry could not be made durable
        """
        payload = _normalize_payload(payload)

        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a+b') as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    prev_hash, sequence = self._read_tail(f)
                    timestamp = self._clock()
                    entry_hash = LedgerEntry.compute_hash(
                        prev_hash, sequence, timestamp, kind, payload,
                    )
                    signature = None
                    if self._signing_key is not None:
                        signature = self._signing_key.sign(
                            entry_hash.encode('utf-8')
                        ).signature.hex()

                    entry = LedgerEntry(
                        sequence=sequence,
                        timestamp=timestamp,
                        kind=kind,
                        payload=payload,
                        prev_hash=prev_hash,
                        entry_hash=entry_hash,
                        signature=signature,
                    )

                    f.seek(0, os.SEEK_END)
                    if f.tell() > 0:
                        f.seek(-1, os.SEEK_END)
                        if f.read(1) != b'\n':
                            # Torn previous write; keep it on its own line
                            f.write(b'\n')
                    f.write(entry.to_json().encode('utf-8') + b'\n')
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        logger.debug(f"Ledger #{entry.sequence} {kind.value}")
        return entry

    def _raw_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        with open(self.path, 'r', encoding='utf-8', errors='replace') as f:
            return [line.strip() for line in f if line.strip()]

    def verify_chain(self) -> VerificationResult:
        """
        Recompute the chain from the first entry.

        Returns a failed result with reason LedgerCorrupt and the index of the
        first divergent entry; entries before that index are intact.
        """
        expected_prev = GENESIS_HASH
        lines = self._raw_lines()

        for index, line in enumerate(lines):
            problem = None
            try:
                entry = LedgerEntry.from_line(line)
            except (ValueError, KeyError, TypeError) as e:
                entry = None
                problem = f"unparsable entry ({e})"

            if entry is not None:
                if entry.sequence != index:
                    problem = f"sequence {entry.sequence} out of order"
                elif entry.prev_hash != expected_prev:
                    problem = "previous-hash link broken"
                elif entry.recompute_hash() != entry.entry_hash:
                    problem = "entry hash does not match its content"
                elif self._verify_key is not None and not self._signature_ok(entry):
                    problem = "signature invalid or missing"

            if problem is not None:
                error = LedgerCorrupt(
                    f"Ledger corrupt at entry {index}: {problem}", index=index,
                )
                logger.critical(error.message)
                return VerificationResult.from_error(error, checked=index)

            expected_prev = entry.entry_hash

        return VerificationResult(valid=True, checked=len(lines))

    def _signature_ok(self, entry: LedgerEntry) -> bool:
        if not entry.signature:
            return False
        try:
            self._verify_key.verify(
                entry.entry_hash.encode('utf-8'), bytes.fromhex(entry.signature),
            )
            return True
        except (nacl.exceptions.BadSignatureError, ValueError, TypeError):
            return False

    def entries(self) -> List[LedgerEntry]:
        """All readable entries, oldest first. Unreadable lines are skipped."""
        result = []
        for line in self._raw_lines():
            try:
                result.append(LedgerEntry.from_line(line))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping unreadable ledger line")
        return result

    def tail(self, count: int = 20) -> List[LedgerEntry]:
        """The last count entries, oldest first."""
        if count <= 0:
            return []
        return self.entries()[-count:]

    def entries_by_kind(self, kind: EventKind, limit: Optional[int] = None) -> List[LedgerEntry]:
        matching = [e for e in self.entries() if e.kind == kind]
        if limit is not None:
            matching = matching[-limit:]
        return matching

    def last_entry(self) -> Optional[LedgerEntry]:
        if not self.path.exists():
            return None
        with open(self.path, 'rb') as f:
            for line in _reverse_lines(f, BufferSizes.LEDGER_TAIL_CHUNK):
                try:
                    return LedgerEntry.from_line(line)
                except (ValueError, KeyError, TypeError):
                    continue
        return None

    def count(self) -> int:
        return len(self._raw_lines())

    def export(self, output_path: Union[str, Path]) -> None:
        """Copy the ledger for archival."""
        shutil.copy2(self.path, output_path)
