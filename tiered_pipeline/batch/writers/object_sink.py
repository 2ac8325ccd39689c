"""
Partitioned object sinks.

A sink stores opaque payloads under slash-separated partition keys, each
with a manifest. Writing an existing key replaces it atomically, which is
what makes tier writes idempotent.
"""

import glob
import hashlib
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from tiered_pipeline.core.exceptions import PartitionNotFound, SinkUnavailable
from tiered_pipeline.core.models import ManifestEntry

PAYLOAD_SUFFIX = ".payload"
MANIFEST_SUFFIX = ".manifest.json"
DIGEST_LENGTH = 16


class PartitionedObjectSink(ABC):
    """
    Key/value store for tier partitions.

    Implementations raise ``SinkUnavailable`` (or ``OSError``) on transient
    storage failures; the tiered writer retries those.
    """

    @abstractmethod
    def write(self, partition_key: str, payload: bytes, manifest: ManifestEntry) -> None:
        """Store payload and manifest, replacing any previous content of the key."""

    @abstractmethod
    def read(self, partition_key: str) -> bytes:
        """
        Raises:
            PartitionNotFound: If the key does not exist
        """

    @abstractmethod
    def read_manifest(self, partition_key: str) -> ManifestEntry:
        """
        Raises:
            PartitionNotFound: If the key does not exist
        """

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """Sorted keys starting with ``prefix``."""

    def exists(self, partition_key: str) -> bool:
        try:
            self.read_manifest(partition_key)
        except PartitionNotFound:
            return False
        return True


class InMemoryObjectSink(PartitionedObjectSink):
    """Dictionary-backed sink for tests and dry runs."""

    def __init__(self):
        self._objects: dict[str, tuple[bytes, ManifestEntry]] = {}
        self._lock = threading.Lock()
        self.write_count = 0

    def write(self, partition_key: str, payload: bytes, manifest: ManifestEntry) -> None:
        with self._lock:
            self._objects[partition_key] = (bytes(payload), manifest)
            self.write_count += 1

    def read(self, partition_key: str) -> bytes:
        return self._get(partition_key)[0]

    def read_manifest(self, partition_key: str) -> ManifestEntry:
        return self._get(partition_key)[1]

    def list(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._objects if key.startswith(prefix))

    def _get(self, partition_key: str) -> tuple[bytes, ManifestEntry]:
        with self._lock:
            try:
                return self._objects[partition_key]
            except KeyError:
                raise PartitionNotFound(partition_key) from None


class LocalFileObjectSink(PartitionedObjectSink):
    """
    Filesystem sink rooted at ``base_dir``.

    Each partition is a manifest file ``<key>.manifest.json`` pointing at a
    content-addressed payload file ``<key>.<digest>.payload``. A write puts
    the new payload next to the old one and then replaces the manifest with
    ``os.replace``; that rename is the only step that changes what a reader
    sees. Payload files no manifest points at are removed afterwards.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def write(self, partition_key: str, payload: bytes, manifest: ManifestEntry) -> None:
        manifest_path = self._path(partition_key, MANIFEST_SUFFIX)
        manifest_path.parent.mkdir(parents=True, exist_ok=True)

        digest = hashlib.sha256(payload).hexdigest()
        payload_name = self._leaf(partition_key) + f".{digest[:DIGEST_LENGTH]}{PAYLOAD_SUFFIX}"
        self._atomic_write(manifest_path.parent / payload_name, payload)

        envelope = {
            "payload_file": payload_name,
            "payload_sha256": digest,
            "manifest": manifest.model_dump(mode="json"),
        }
        self._atomic_write(manifest_path, json.dumps(envelope).encode("utf-8"))
        self._remove_stale_payloads(partition_key, keep=payload_name)

    def read(self, partition_key: str) -> bytes:
        envelope = self._envelope(partition_key)
        path = self._path(partition_key, MANIFEST_SUFFIX).parent / envelope["payload_file"]
        try:
            payload = path.read_bytes()
        except FileNotFoundError:
            raise SinkUnavailable(f"Payload of {partition_key} is missing: {path.name}") from None
        if hashlib.sha256(payload).hexdigest() != envelope["payload_sha256"]:
            raise SinkUnavailable(f"Payload of {partition_key} does not match its manifest")
        return payload

    def read_manifest(self, partition_key: str) -> ManifestEntry:
        return ManifestEntry.model_validate(self._envelope(partition_key)["manifest"])

    def list(self, prefix: str = "") -> list[str]:
        # Walk only the deepest directory the prefix fully names
        directory = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        root = self.base_dir / directory if directory else self.base_dir
        if not root.is_dir():
            return []

        keys = []
        for path in root.rglob(f"*{MANIFEST_SUFFIX}"):
            relative = path.relative_to(self.base_dir).as_posix()
            key = relative[: -len(MANIFEST_SUFFIX)]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _envelope(self, partition_key: str) -> dict:
        path = self._path(partition_key, MANIFEST_SUFFIX)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise PartitionNotFound(partition_key) from None
        return json.loads(text)

    def _remove_stale_payloads(self, partition_key: str, keep: str) -> None:
        directory = self._path(partition_key, MANIFEST_SUFFIX).parent
        for path in directory.glob(glob.escape(self._leaf(partition_key)) + f".*{PAYLOAD_SUFFIX}"):
            if path.name != keep:
                path.unlink(missing_ok=True)

    @staticmethod
    def _leaf(partition_key: str) -> str:
        return partition_key.rsplit("/", 1)[-1]

    def _path(self, partition_key: str, suffix: str) -> Path:
        parts = partition_key.split("/")
        if not partition_key or partition_key.startswith("/") or any(p in ("", ".", "..") for p in parts):
            raise ValueError(f"Invalid partition key: {partition_key!r}")
        return self.base_dir.joinpath(*parts[:-1], parts[-1] + suffix)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
