"""
Deployment substrate - where generation trees physically live.

The core needs materialize (prepare a private copy), install (swap a
prepared copy in under the version's final name) and retire, plus seal
(mark read-only) and discard (drop a copy that never became a generation).
How the substrate achieves isolation (plain directories, bind mounts,
overlay filesystems, immutable attributes) is its own business.
"""

import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from ..constants import Paths, Permissions
from ..integrity.bundle import Bundle
from ..integrity.manifest import Manifest

if TYPE_CHECKING:
    from .model import Generation

logger = logging.getLogger(__name__)


class DeploymentSubstrate(ABC):
    """Collaborator that owns the on-disk form of generations."""

    @abstractmethod
    def materialize(self, version: str, bundle: Bundle, manifest: Manifest) -> Path:
        """Copy the listed artifacts into a fresh, isolated location."""

    def install(self, version: str, prepared: Path) -> Path:
        """
        Move a prepared copy to its final location and return it. Called
        with the activation lock held. Default: the copy is already final.
        """
        return Path(prepared)

    @abstractmethod
    def retire(self, generation: 'Generation') -> None:
        """Retention hook for a Retired generation. May be a no-op."""

    def seal(self, location: Path) -> None:
        """Mark a tree read-only. Default: nothing to do."""

    def discard(self, location: Path) -> None:
        """Remove a materialized tree that never became a generation."""


def _make_writable(root: Path) -> None:
    """Undo seal() so the tree can be replaced or removed."""
    if not root.exists():
        return
    if root.is_symlink():
        return
    os.chmod(root, Permissions.WRITABLE_DIR)
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        for name in dirnames:
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                os.chmod(path, Permissions.WRITABLE_DIR)
        for name in filenames:
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                os.chmod(path, Permissions.WRITABLE_FILE)


class DirectorySubstrate(DeploymentSubstrate):
    """
    Plain-directory substrate.

    Layout: <generations_dir>/<version>/tree/<artifacts>. materialize builds
    the tree in a hidden temporary sibling; install renames it into place,
    so a half-copied tree is never visible under the final name.
    """

    def __init__(
        self,
        generations_dir: Path,
        read_only: bool = True,
        remove_retired: bool = True,
    ):
        self.generations_dir = Path(generations_dir)
        self.read_only = read_only
        self.remove_retired = remove_retired

    def tree_path(self, version: str) -> Path:
        return self.generations_dir / version / Paths.GENERATION_TREE

    def materialize(self, version: str, bundle: Bundle, manifest: Manifest) -> Path:
        generation_dir = self.generations_dir / version
        generation_dir.mkdir(parents=True, exist_ok=True)

        temp_dir = Path(tempfile.mkdtemp(dir=generation_dir, prefix='.tree-'))
        try:
            for artifact in manifest:
                destination = temp_dir / artifact.path
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(bundle.artifact_path(artifact.path), destination)

            if self.read_only:
                self.seal(temp_dir)
        except BaseException:
            self.discard(temp_dir)
            raise

        logger.info(f"Materialized {len(manifest)} artifacts for {version} at {temp_dir}")
        return temp_dir

    def install(self, version: str, prepared: Path) -> Path:
        final = self.tree_path(version)
        if final.exists():
            _make_writable(final)
            shutil.rmtree(final)
        os.rename(prepared, final)
        return final

    def seal(self, location: Path) -> None:
        if not self.read_only:
            return
        location = Path(location)
        if not location.is_dir():
            return
        for dirpath, dirnames, filenames in os.walk(location, topdown=False, followlinks=False):
            for name in filenames:
                path = os.path.join(dirpath, name)
                if not os.path.islink(path):
                    os.chmod(path, Permissions.READ_ONLY_FILE)
            for name in dirnames:
                path = os.path.join(dirpath, name)
                if not os.path.islink(path):
                    os.chmod(path, Permissions.READ_ONLY_DIR)
        os.chmod(location, Permissions.READ_ONLY_DIR)

    def discard(self, location: Path) -> None:
        location = Path(location)
        _make_writable(location)
        shutil.rmtree(location, ignore_errors=True)

    def retire(self, generation: 'Generation') -> None:
        if not self.remove_retired:
            logger.info(f"Retired generation {generation.version} left on disk")
            return
        location = Path(generation.location)
        if location.exists():
            _make_writable(location)
            shutil.rmtree(location)
            logger.info(f"Removed retired generation {generation.version}")
