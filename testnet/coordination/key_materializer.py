"""Key materializer: one-shot copy of shared secrets into the shared directory.

Copies a fixed set of named key files (libp2p keys, validator keys, ...) into
a directory every node process can read, sets their permissions, verifies
the copies by checksum and only then writes the marker file. The marker is
the ``completed`` signal dependents are gated on, so a failed run never
leaves a marker behind: either every file is in place or dependents stay
pending.

Re-running is safe: files are overwritten with identical content.

Usage:
    from testnet.coordination.key_materializer import KeyMaterializer

    bundle = await KeyMaterializer(spec.key_bundle).materialize()
    bundle["libp2p_keys.json"]  # -> Path("/tmp/shared/libp2p_keys.json")
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import time
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType

from testnet.coordination.process_spec import KeyBundleSpec
from testnet.utils.exceptions import FS_ERRORS, MaterializationError

logger = logging.getLogger(__name__)


class SharedKeyBundle(Mapping[str, Path]):
    """Immutable name -> path mapping of materialized key files."""

    def __init__(self, files: Mapping[str, Path], directory: Path, checksums: Mapping[str, str]):
        self._files = MappingProxyType(dict(files))
        self._checksums = MappingProxyType(dict(checksums))
        self.directory = directory

    def __getitem__(self, name: str) -> Path:
        return self._files[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def checksum(self, name: str) -> str:
        return self._checksums[name]

    def read_bytes(self, name: str) -> bytes:
        return self._files[name].read_bytes()


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class KeyMaterializer:
    """Materializes a ``KeyBundleSpec`` exactly once per run."""

    def __init__(self, spec: KeyBundleSpec):
        self.spec = spec

    async def materialize(self) -> SharedKeyBundle:
        """Copy, chmod and verify every source, then write the marker.

        Raises:
            MaterializationError: On the first source that cannot be copied.
        """
        return await asyncio.to_thread(self._materialize_sync)

    async def run(self) -> int:
        """Launch entry point: exit code 0 on success, 1 on failure."""
        try:
            bundle = await self.materialize()
        except MaterializationError as e:
            logger.error(f"[KeyMaterializer] {e}")
            return 1
        logger.info(
            f"[KeyMaterializer] Materialized {len(bundle)} key files into {bundle.directory}"
        )
        return 0

    def _materialize_sync(self) -> SharedKeyBundle:
        start = time.monotonic()
        target_dir = self.spec.target_dir
        marker = self.spec.marker_path

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            # Stale marker from an earlier run must not survive a failed run
            marker.unlink(missing_ok=True)
        except FS_ERRORS as e:
            raise MaterializationError(f"Cannot prepare {target_dir}: {e}") from e

        for name, source in self.spec.sources:
            if not source.is_file():
                raise MaterializationError(f"Key source missing: {source}", source=str(source))

        files: dict[str, Path] = {}
        checksums: dict[str, str] = {}
        for name, source in self.spec.sources:
            dest = target_dir / name
            files[name] = dest
            checksums[name] = self._copy_one(source, dest)

        try:
            marker.write_text(f"{time.time():.3f}\n")
        except FS_ERRORS as e:
            raise MaterializationError(f"Cannot write marker {marker}: {e}") from e

        logger.debug(
            f"[KeyMaterializer] Copied {len(files)} files in {time.monotonic() - start:.3f}s"
        )
        return SharedKeyBundle(files, target_dir, checksums)

    def _copy_one(self, source: Path, dest: Path) -> str:
        """Atomic copy via a temp file in the target directory; returns the checksum."""
        tmp = dest.with_name(f".{dest.name}.tmp")
        try:
            shutil.copyfile(source, tmp)
            os.chmod(tmp, self.spec.mode)
            os.replace(tmp, dest)
            expected = _sha256(source)
            actual = _sha256(dest)
        except FS_ERRORS as e:
            tmp.unlink(missing_ok=True)
            raise MaterializationError(f"Copy {source} -> {dest} failed: {e}", source=str(source)) from e

        if expected != actual:
            raise MaterializationError(
                f"Checksum mismatch after copying {source} ({expected[:12]} != {actual[:12]})",
                source=str(source),
            )
        return actual
