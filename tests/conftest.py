"""
Pytest configuration and shared fixtures for Generation Warden tests.

This module provides common fixtures for testing the warden components:
temporary state directories, a release signing key, a bundle factory that
writes and signs bundles, and a fully wired Warden with fake clocks.
"""

import hashlib
import json
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

import nacl.signing
import pytest

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.config.settings import WardenConfig
from warden.integrity.backends import Ed25519SignatureBackend, VerificationBackend
from warden.integrity.verifier import BundleVerifier
from warden.ledger.event_ledger import Ledger
from warden.service import Warden


def _make_tree_writable(root: str) -> None:
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                os.chmod(path, 0o755)
        for name in filenames:
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                os.chmod(path, 0o644)


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="warden_test_")
    yield Path(tmpdir)
    # Sealed generation trees are read-only
    _make_tree_writable(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def state_dir(temp_dir: Path) -> Path:
    """Provide a state directory path."""
    return temp_dir / "state"


# ===========================================================================
# Clocks
# ===========================================================================

class FakeClock:
    """Deterministic ISO timestamps, one second apart."""

    def __init__(self):
        self.ticks = 0

    def __call__(self) -> str:
        self.ticks += 1
        minutes, seconds = divmod(self.ticks, 60)
        return f"2026-01-01T00:{minutes:02d}:{seconds:02d}Z"


class FakeMonotonic:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def sleeps() -> List[float]:
    """Records backoff sleeps instead of sleeping."""
    return []


# ===========================================================================
# Keys and Bundles
# ===========================================================================

@pytest.fixture
def release_key() -> nacl.signing.SigningKey:
    """Release-pipeline signing key (trusted by the warden under test)."""
    return nacl.signing.SigningKey.generate()


@pytest.fixture
def release_key_hex(release_key) -> str:
    return bytes(release_key.verify_key).hex()


@pytest.fixture
def verifier(release_key_hex) -> BundleVerifier:
    """BundleVerifier trusting release_key."""
    return BundleVerifier(VerificationBackend(
        signature=Ed25519SignatureBackend.from_hex(release_key_hex),
    ))


def manifest_bytes(version: str, files: Dict[str, bytes], **extra) -> bytes:
    """Serialize a manifest listing files in the given order."""
    data = {
        'format': '1.0',
        'version': version,
        'created_at': '2026-01-01T00:00:00Z',
        'signer_id': 'test-release',
        'artifacts': [
            {
                'path': path,
                'sha256': hashlib.sha256(content).hexdigest(),
                'size': len(content),
            }
            for path, content in files.items()
        ],
        'metadata': {},
    }
    data.update(extra)
    return json.dumps(data, indent=2).encode('utf-8')


@pytest.fixture
def make_bundle(temp_dir: Path, release_key) -> Callable[..., Path]:
    """
    Factory writing a signed bundle directory.

    make_bundle('1.0.0', {'app.bin': b'...'}) -> Path
    """
    counter = {'n': 0}

    def _make(
        version: str,
        files: Dict[str, bytes],
        signing_key: Optional[nacl.signing.SigningKey] = None,
        sign: bool = True,
        hex_signature: bool = False,
        raw_manifest: Optional[bytes] = None,
        extra_files: Optional[Dict[str, bytes]] = None,
    ) -> Path:
        counter['n'] += 1
        root = temp_dir / "bundles" / f"{version}-{counter['n']}"
        root.mkdir(parents=True)

        for path, content in list(files.items()) + list((extra_files or {}).items()):
            target = root / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

        raw = raw_manifest if raw_manifest is not None else manifest_bytes(version, files)
        (root / "manifest.json").write_bytes(raw)

        if sign:
            key = signing_key or release_key
            signature = key.sign(raw).signature
            if hex_signature:
                (root / "manifest.json.sig").write_text(signature.hex() + "\n")
            else:
                (root / "manifest.json.sig").write_bytes(signature)
        return root

    return _make


@pytest.fixture
def build_manifest() -> Callable[..., bytes]:
    return manifest_bytes


def tamper(path: Path, offset: int = 0) -> None:
    """Flip one byte of a (possibly sealed) file."""
    os.chmod(path.parent, 0o755)
    os.chmod(path, 0o644)
    data = bytearray(path.read_bytes())
    data[offset] ^= 0xFF
    path.write_bytes(bytes(data))


@pytest.fixture
def tamper_file() -> Callable[..., None]:
    return tamper


# ===========================================================================
# Ledger and Warden Fixtures
# ===========================================================================

@pytest.fixture
def ledger(temp_dir: Path, fake_clock) -> Ledger:
    """Unsigned ledger in a temporary directory."""
    return Ledger(temp_dir / "ledger.jsonl", clock=fake_clock)


@pytest.fixture
def signed_ledger(temp_dir: Path, fake_clock) -> Ledger:
    """Ledger signing every entry with a fresh key."""
    return Ledger(
        temp_dir / "signed-ledger.jsonl",
        signing_key=nacl.signing.SigningKey.generate(),
        clock=fake_clock,
    )


@pytest.fixture
def warden_config(state_dir: Path, release_key_hex: str) -> WardenConfig:
    config = WardenConfig(state_dir=str(state_dir), trusted_public_key=release_key_hex)
    config.retention.quarantine_cycles = 3
    return config


@pytest.fixture
def make_warden(warden_config, fake_clock, monotonic, sleeps) -> Callable[..., Warden]:
    """Factory for Warden instances sharing one state directory."""

    def _make(config: Optional[WardenConfig] = None, **kwargs) -> Warden:
        kwargs.setdefault('ledger_clock', fake_clock)
        kwargs.setdefault('monitor_clock', monotonic)
        kwargs.setdefault('monitor_sleep', sleeps.append)
        return Warden(config or warden_config, **kwargs)

    return _make


@pytest.fixture
def warden(make_warden) -> Warden:
    """Fully wired Warden over a fresh state directory."""
    return make_warden()


def artifact_files(root: Path) -> Dict[str, bytes]:
    """Relative path -> bytes for every regular file under root."""
    result = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = Path(dirpath) / name
            if stat.S_ISREG(os.lstat(full).st_mode):
                result[full.relative_to(root).as_posix()] = full.read_bytes()
    return result


@pytest.fixture
def read_tree() -> Callable[[Path], Dict[str, bytes]]:
    return artifact_files


# ===========================================================================
# Pytest Configuration
# ===========================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "security: Security-specific tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
