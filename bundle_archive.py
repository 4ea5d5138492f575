"""Staging directory and tarball handling for the diagnostic bundle."""

from __future__ import annotations

import logging
import shutil
import tarfile
from pathlib import Path

LOG = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Raised when the bundle could not be packed; the staging directory is kept."""

    def __init__(self, message: str, bundle_dir: Path):
        super().__init__(message)
        self.bundle_dir = bundle_dir


def create_bundle_dir(output_root: Path, name: str) -> Path:
    """Create ``output_root/name`` from scratch, discarding any leftover copy."""

    bundle_dir = output_root / name
    if bundle_dir.exists():
        LOG.debug("Removing stale bundle directory %s", bundle_dir)
        shutil.rmtree(bundle_dir)
    bundle_dir.mkdir(parents=True)
    return bundle_dir


def archive_path_for(bundle_dir: Path) -> Path:
    return bundle_dir.with_name(bundle_dir.name + ".tar.gz")


def build_archive(bundle_dir: Path) -> Path:
    """Pack ``bundle_dir`` into ``<bundle_dir>.tar.gz`` and remove the directory.

    Members are rooted at the bundle directory name, not its absolute path.
    """

    archive_path = archive_path_for(bundle_dir)
    try:
        with tarfile.open(archive_path, "w:gz") as tar:
            tar.add(bundle_dir, arcname=bundle_dir.name)
    except (OSError, tarfile.TarError) as exc:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"failed to create archive {archive_path}: {exc}", bundle_dir) from exc
    except BaseException:
        # interrupted while packing
        archive_path.unlink(missing_ok=True)
        raise

    shutil.rmtree(bundle_dir)
    return archive_path
