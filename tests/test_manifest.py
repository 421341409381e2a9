"""
Tests for warden/integrity/manifest.py and bundle.py - Manifest parsing

Tests cover:
- Parsing and ordering
- Path validation (absolute, traversal, reserved names, duplicates)
- Field validation (sha256, size, version, format)
- Signature decoding
- Bundle path confinement
"""

import hashlib
import json
import os

import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.exceptions import ManifestCorrupt
from warden.integrity.bundle import Bundle, decode_signature
from warden.integrity.manifest import ArtifactEntry, Manifest, validate_artifact_path


def _raw(artifacts, **extra):
    data = {'format': '1.0', 'version': '1.0.0', 'artifacts': artifacts}
    data.update(extra)
    return json.dumps(data).encode('utf-8')


def _entry(path, content=b'x'):
    return {'path': path, 'sha256': hashlib.sha256(content).hexdigest(), 'size': len(content)}


class TestManifestParsing:
    """Tests for Manifest.from_bytes."""

    @pytest.mark.unit
    def test_parse_preserves_order(self):
        """Artifacts keep the order listed in the file."""
        raw = _raw([_entry('b.bin'), _entry('a.bin'), _entry('lib/c.so')])
        manifest = Manifest.from_bytes(raw)

        assert manifest.version == '1.0.0'
        assert manifest.paths == ['b.bin', 'a.bin', 'lib/c.so']
        assert len(manifest) == 3

    @pytest.mark.unit
    def test_manifest_hash_is_sha256_of_raw_bytes(self):
        """The manifest hash covers the exact bytes, not a re-serialization."""
        raw = _raw([_entry('app.bin')])
        assert Manifest.from_bytes(raw).manifest_hash == hashlib.sha256(raw).hexdigest()

    @pytest.mark.unit
    def test_get_and_total_size(self):
        """Lookups by path and size totals."""
        raw = _raw([_entry('a', b'12345'), _entry('b', b'678')])
        manifest = Manifest.from_bytes(raw)

        assert manifest.get('a').size == 5
        assert manifest.get('missing') is None
        assert manifest.total_size == 8

    @pytest.mark.unit
    def test_empty_artifact_list_is_allowed(self):
        """A manifest may list no artifacts."""
        assert len(Manifest.from_bytes(_raw([]))) == 0

    @pytest.mark.unit
    def test_manifest_is_immutable(self):
        """Verified manifests cannot be modified."""
        manifest = Manifest.from_bytes(_raw([_entry('a')]))
        with pytest.raises(Exception):
            manifest.version = '2.0.0'

    @pytest.mark.unit
    @pytest.mark.parametrize('raw', [
        b'not json',
        b'[1, 2, 3]',
        b'\xff\xfe',
    ])
    def test_invalid_json(self, raw):
        """Non-object or non-JSON content is ManifestCorrupt."""
        with pytest.raises(ManifestCorrupt):
            Manifest.from_bytes(raw)

    @pytest.mark.unit
    def test_missing_version(self):
        with pytest.raises(ManifestCorrupt, match='version'):
            Manifest.from_bytes(json.dumps({'artifacts': []}).encode())

    @pytest.mark.unit
    @pytest.mark.parametrize('version', ['../evil', 'a/b', '.hidden', '..'])
    def test_version_must_be_a_plain_identifier(self, version):
        """The version names a directory, so it must not traverse."""
        with pytest.raises(ManifestCorrupt):
            Manifest.from_bytes(_raw([], version=version))

    @pytest.mark.unit
    def test_unsupported_format(self):
        with pytest.raises(ManifestCorrupt, match='format'):
            Manifest.from_bytes(_raw([], format='9.9'))

    @pytest.mark.unit
    def test_artifacts_must_be_a_list(self):
        with pytest.raises(ManifestCorrupt):
            Manifest.from_bytes(_raw({'a': 'b'}))

    @pytest.mark.unit
    def test_duplicate_paths_rejected(self):
        """Each path may be listed once."""
        with pytest.raises(ManifestCorrupt) as exc_info:
            Manifest.from_bytes(_raw([_entry('a'), _entry('a')]))
        assert exc_info.value.path == 'a'

    @pytest.mark.unit
    @pytest.mark.parametrize('sha256', ['abc', 'G' * 64, 'A' * 64, 123])
    def test_invalid_sha256(self, sha256):
        """Digests must be 64 lowercase hex characters."""
        entry = {'path': 'a', 'sha256': sha256, 'size': 1}
        with pytest.raises(ManifestCorrupt):
            Manifest.from_bytes(_raw([entry]))

    @pytest.mark.unit
    @pytest.mark.parametrize('size', [-1, '10', True, 1.5])
    def test_invalid_size(self, size):
        entry = {'path': 'a', 'sha256': 'a' * 64, 'size': size}
        with pytest.raises(ManifestCorrupt):
            Manifest.from_bytes(_raw([entry]))

    @pytest.mark.unit
    def test_to_dict_round_trips_fields(self):
        raw = _raw([_entry('a')], signer_id='ci')
        data = Manifest.from_bytes(raw).to_dict()
        assert data['signer_id'] == 'ci'
        assert data['artifacts'][0]['path'] == 'a'


class TestArtifactPaths:
    """Tests for validate_artifact_path."""

    @pytest.mark.security
    @pytest.mark.parametrize('path', [
        '/etc/passwd',
        '../outside',
        'lib/../../outside',
        'lib//double',
        './here',
        'dir\\windows',
        '',
        'manifest.json',
        'manifest.json.sig',
    ])
    def test_rejected_paths(self, path):
        """Paths that could escape the tree or shadow bundle files are rejected."""
        with pytest.raises(ManifestCorrupt):
            validate_artifact_path(path)

    @pytest.mark.unit
    @pytest.mark.parametrize('path', ['app.bin', 'lib/helper.so', 'a/b/c/d.txt', 'sub/manifest.json'])
    def test_accepted_paths(self, path):
        assert validate_artifact_path(path) == path

    @pytest.mark.unit
    def test_entry_requires_object(self):
        with pytest.raises(ManifestCorrupt):
            ArtifactEntry.from_dict(['a'], 0)


class TestSignatureDecoding:
    """Tests for decode_signature."""

    @pytest.mark.unit
    def test_raw_signature(self):
        raw = bytes(range(64))
        assert decode_signature(raw) == raw

    @pytest.mark.unit
    def test_hex_signature_with_whitespace(self):
        raw = bytes(range(64))
        assert decode_signature(raw.hex().encode() + b'\n') == raw

    @pytest.mark.unit
    @pytest.mark.parametrize('raw', [b'', b'short', b'z' * 128, bytes(63)])
    def test_undecodable_signature(self, raw):
        assert decode_signature(raw) is None


class TestBundle:
    """Tests for Bundle."""

    @pytest.mark.unit
    def test_open_missing_directory(self, temp_dir):
        with pytest.raises(ManifestCorrupt):
            Bundle.open(temp_dir / 'nope')

    @pytest.mark.unit
    def test_missing_manifest(self, temp_dir):
        bundle = Bundle.open(temp_dir)
        with pytest.raises(ManifestCorrupt):
            bundle.read_manifest_bytes()

    @pytest.mark.unit
    def test_missing_signature_reads_as_none(self, temp_dir):
        assert Bundle.open(temp_dir).read_signature() is None

    @pytest.mark.security
    def test_symlink_escape_refused(self, temp_dir):
        """An artifact symlinked outside the bundle is refused."""
        outside = temp_dir / 'secret'
        outside.write_bytes(b'secret')
        bundle_dir = temp_dir / 'bundle'
        bundle_dir.mkdir()
        os.symlink(outside, bundle_dir / 'app.bin')

        with pytest.raises(ManifestCorrupt):
            Bundle.open(bundle_dir).artifact_path('app.bin')
