"""
Content-addressed storage for rendered PDFs and per-job scratch workspaces.

Artifacts are addressed by the SHA-256 of their bytes, so storing the same PDF
twice yields the same reference and a single file on disk. Every artifact has
a JSON sidecar recording who produced it. Deletion is reference checked:
owners (cache entries, in-flight jobs) pin the artifacts they point at, and
pinned artifacts cannot be deleted or swept.

Layout under the store root::

    objects/<ref[:2]>/<ref>.pdf
    objects/<ref[:2]>/<ref>.json
    scratch/<job-id>/
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator, List, Optional, Set
from uuid import uuid4

from .errors import ArtifactInUse, ArtifactNotFound
from .models import Artifact
from .utils import ensure_directory, sanitize_label, utcnow

logger = logging.getLogger(__name__)

REF_PATTERN = re.compile(r"^[0-9a-f]{64}$")
TMP_PREFIX = ".tmp-"


class ArtifactStore:
    """
    Filesystem-backed artifact store.

    Thread Safety:
        The pin table and every publish/delete decision are guarded by one
        lock. File contents are written to a temporary name outside the lock
        and published with an atomic ``os.replace``.
    """

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root))
        self._objects = ensure_directory(self.root / "objects")
        self._scratch = ensure_directory(self.root / "scratch")
        self._lock = Lock()
        self._pins: Dict[str, Set[str]] = {}

    def _paths(self, ref: str) -> tuple[Path, Path]:
        if not REF_PATTERN.match(ref):
            raise ArtifactNotFound(f"Artifact {ref!r} not found")
        shard = self._objects / ref[:2]
        return shard / f"{ref}.pdf", shard / f"{ref}.json"

    def store(self, data: bytes, produced_by_job_id: str, pin_owner: Optional[str] = None) -> Artifact:
        """
        Store bytes and return their artifact descriptor.

        Args:
            data: The PDF bytes
            produced_by_job_id: Job recorded as the producer when the bytes are new
            pin_owner: If given, the artifact is pinned for this owner atomically
                with publication, so a concurrent sweep can never remove it

        Returns:
            The artifact; identical bytes always produce the same ``ref``
        """
        ref = hashlib.sha256(data).hexdigest()
        blob_path, meta_path = self._paths(ref)
        ensure_directory(blob_path.parent)

        tmp_path = blob_path.parent / f"{TMP_PREFIX}{uuid4().hex}"
        tmp_path.write_bytes(data)
        try:
            with self._lock:
                if meta_path.exists() and blob_path.exists():
                    artifact = self._read_meta(meta_path)
                else:
                    artifact = Artifact(
                        ref=ref,
                        size_bytes=len(data),
                        produced_by_job_id=produced_by_job_id,
                        created_at=utcnow(),
                    )
                    os.replace(tmp_path, blob_path)
                    meta_path.write_text(artifact.model_dump_json(), encoding="utf-8")
                    logger.info(f"Stored artifact {ref} ({len(data)} bytes) from job {produced_by_job_id}")
                if pin_owner is not None:
                    self._pins.setdefault(ref, set()).add(pin_owner)
        finally:
            tmp_path.unlink(missing_ok=True)
        return artifact

    @staticmethod
    def _read_meta(meta_path: Path) -> Artifact:
        return Artifact.model_validate_json(meta_path.read_text(encoding="utf-8"))

    def exists(self, ref: str) -> bool:
        try:
            blob_path, _ = self._paths(ref)
        except ArtifactNotFound:
            return False
        return blob_path.exists()

    def retrieve(self, ref: str) -> bytes:
        blob_path, _ = self._paths(ref)
        try:
            return blob_path.read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactNotFound(f"Artifact {ref} not found") from exc

    def describe(self, ref: str) -> Artifact:
        _, meta_path = self._paths(ref)
        try:
            return self._read_meta(meta_path)
        except FileNotFoundError as exc:
            raise ArtifactNotFound(f"Artifact {ref} not found") from exc

    def pin(self, ref: str, owner: str) -> None:
        with self._lock:
            if not self.exists(ref):
                raise ArtifactNotFound(f"Artifact {ref} not found")
            self._pins.setdefault(ref, set()).add(owner)

    def unpin(self, ref: str, owner: str) -> None:
        with self._lock:
            owners = self._pins.get(ref)
            if not owners:
                return
            owners.discard(owner)
            if not owners:
                del self._pins[ref]

    def pin_count(self, ref: str) -> int:
        with self._lock:
            return len(self._pins.get(ref, ()))

    def delete(self, ref: str) -> None:
        """
        Delete an artifact that nothing references.

        Raises:
            ArtifactInUse: If any owner still pins the artifact
            ArtifactNotFound: If the artifact does not exist
        """
        blob_path, meta_path = self._paths(ref)
        with self._lock:
            if self._pins.get(ref):
                raise ArtifactInUse(f"Artifact {ref} is referenced by {len(self._pins[ref])} owner(s)")
            if not blob_path.exists():
                raise ArtifactNotFound(f"Artifact {ref} not found")
            blob_path.unlink()
            meta_path.unlink(missing_ok=True)
        logger.info(f"Deleted artifact {ref}")

    def list_refs(self) -> List[str]:
        return sorted(path.stem for path in self._objects.glob("*/*.pdf"))

    def sweep(self) -> int:
        """
        Delete every artifact that is not pinned (mark-and-sweep at cleanup time).

        Returns:
            Number of artifacts removed
        """
        removed = 0
        with self._lock:
            for blob_path in self._objects.glob("*/*.pdf"):
                ref = blob_path.stem
                if self._pins.get(ref):
                    continue
                blob_path.unlink(missing_ok=True)
                blob_path.with_suffix(".json").unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info(f"Swept {removed} unreferenced artifact(s)")
        return removed

    @contextmanager
    def scratch_directory(self, job_id: str) -> Iterator[Path]:
        """
        Provide an exclusive, empty working directory for one job.

        The directory is removed when the block exits, whether the build
        succeeded or not.
        """
        path = self._scratch / sanitize_label(job_id, fallback=f"job-{uuid4().hex[:8]}")
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True)
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def purge_scratch(self) -> int:
        """Remove scratch directories left behind by a previous process."""
        leftovers = [path for path in self._scratch.iterdir() if path.is_dir()]
        for path in leftovers:
            shutil.rmtree(path, ignore_errors=True)
        if leftovers:
            logger.warning(f"Removed {len(leftovers)} stale scratch workspace(s)")
        return len(leftovers)
