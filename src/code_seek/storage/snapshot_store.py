"""Persisted snapshot store.

Layout under the index directory::

    CURRENT                         published version number
    snapshots/v00000042/manifest.json
    snapshots/v00000042/chunks.msgpack
    blobs/ab/<hash>.txt             content-addressed file text

A snapshot directory is fully written under a temporary name and renamed
into place before CURRENT is replaced, so CURRENT only ever names a
complete snapshot. Replacing CURRENT is the publication point.
"""

import json
import logging
import os
import shutil
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

import msgpack

from ..errors import StoreCorruption
from .manifest import ChunkRecord, Manifest, checksum

logger = logging.getLogger(__name__)

CURRENT_FILE = "CURRENT"
SNAPSHOTS_DIR = "snapshots"
BLOBS_DIR = "blobs"
MANIFEST_FILE = "manifest.json"
CHUNKS_FILE = "chunks.msgpack"


def snapshot_dir_name(version: int) -> str:
    return f"v{version:08d}"


class SnapshotStore:
    """Reads and writes manifest snapshots, chunk metadata and file blobs."""

    def __init__(self, index_dir: Path):
        self.index_dir = Path(index_dir)
        self.snapshots_dir = self.index_dir / SNAPSHOTS_DIR
        self.blobs_dir = self.index_dir / BLOBS_DIR
        self.current_path = self.index_dir / CURRENT_FILE
        self._write_lock = threading.Lock()

    def ensure_dirs(self) -> None:
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

    # -- publication -----------------------------------------------------

    def read_current_version(self) -> Optional[int]:
        try:
            raw = self.current_path.read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            raise StoreCorruption(self.current_path, f"invalid version {raw!r}")

    def publish(self, version: int) -> None:
        """Atomically point CURRENT at a fully written snapshot."""
        with self._write_lock:
            self._atomic_write(self.current_path, f"{version}\n".encode("utf-8"))
        logger.info(f"Published index version {version}")

    # -- snapshots -------------------------------------------------------

    def write_snapshot(self, manifest: Manifest, chunks: Dict[str, ChunkRecord]) -> Path:
        self.ensure_dirs()
        final_dir = self.snapshots_dir / snapshot_dir_name(manifest.version)
        tmp_dir = self.snapshots_dir / f".tmp-{uuid.uuid4().hex}"
        tmp_dir.mkdir(parents=True)
        try:
            with open(tmp_dir / MANIFEST_FILE, "w") as f:
                json.dump(manifest.to_dict(), f, indent=2)
            records = [chunks[cid].to_dict() for cid in sorted(chunks)]
            with open(tmp_dir / CHUNKS_FILE, "wb") as f:
                msgpack.pack(
                    {"version": manifest.version, "count": len(records), "chunks": records},
                    f,
                )
            if final_dir.exists():
                shutil.rmtree(final_dir)
            os.replace(tmp_dir, final_dir)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        return final_dir

    def load_snapshot(self, version: int) -> Tuple[Manifest, Dict[str, ChunkRecord]]:
        """Load and verify one snapshot.

        Raises:
            FileNotFoundError: If the snapshot directory does not exist
            StoreCorruption: If checksums or structure do not match
        """
        snapshot_dir = self.snapshots_dir / snapshot_dir_name(version)
        if not snapshot_dir.is_dir():
            raise FileNotFoundError(snapshot_dir)

        manifest_path = snapshot_dir / MANIFEST_FILE
        try:
            with open(manifest_path, "r") as f:
                data = json.load(f)
            body = data["manifest"]
            if checksum(body) != data["checksum"]:
                raise StoreCorruption(manifest_path, "checksum mismatch")
            manifest = Manifest.from_body(body)
        except (ValueError, KeyError, TypeError) as e:
            raise StoreCorruption(manifest_path, f"unreadable manifest: {e}")

        if manifest.version != version:
            raise StoreCorruption(
                manifest_path, f"manifest version {manifest.version} != {version}"
            )

        chunks_path = snapshot_dir / CHUNKS_FILE
        try:
            with open(chunks_path, "rb") as f:
                payload = msgpack.unpack(f, raw=False)
            records = [ChunkRecord.from_dict(item) for item in payload["chunks"]]
            if payload["version"] != version or payload["count"] != len(records):
                raise StoreCorruption(chunks_path, "chunk metadata header mismatch")
        except (OSError, ValueError, KeyError, TypeError, msgpack.UnpackException) as e:
            raise StoreCorruption(chunks_path, f"unreadable chunk metadata: {e}")

        chunks = {record.chunk_id: record for record in records}
        missing = manifest.chunk_id_set() - set(chunks)
        if missing:
            raise StoreCorruption(
                chunks_path, f"{len(missing)} manifest chunks have no metadata"
            )
        return manifest, chunks

    def load_current(self) -> Optional[Tuple[Manifest, Dict[str, ChunkRecord]]]:
        """Load the published snapshot, or None when nothing was published."""
        for _ in range(3):
            version = self.read_current_version()
            if version is None:
                return None
            try:
                return self.load_snapshot(version)
            except FileNotFoundError:
                # A concurrent commit may have replaced and collected it.
                if self.read_current_version() == version:
                    raise StoreCorruption(
                        self.snapshots_dir / snapshot_dir_name(version),
                        "published snapshot is missing",
                    )
        raise StoreCorruption(self.current_path, "published version keeps changing")

    def list_versions(self) -> List[int]:
        if not self.snapshots_dir.exists():
            return []
        versions = []
        for path in self.snapshots_dir.iterdir():
            if path.is_dir() and path.name.startswith("v"):
                try:
                    versions.append(int(path.name[1:]))
                except ValueError:
                    continue
        return sorted(versions)

    # -- blobs -----------------------------------------------------------

    def _blob_path(self, content_hash: str) -> Path:
        digest = content_hash.split(":", 1)[-1]
        return self.blobs_dir / digest[:2] / f"{digest}.txt"

    def has_blob(self, content_hash: str) -> bool:
        return self._blob_path(content_hash).exists()

    def write_blob(self, content_hash: str, text: str, overwrite: bool = False) -> None:
        path = self._blob_path(content_hash)
        if path.exists() and not overwrite:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        self._atomic_write(path, text.encode("utf-8"))

    def read_blob(self, content_hash: str) -> str:
        path = self._blob_path(content_hash)
        try:
            return path.read_bytes().decode("utf-8")
        except FileNotFoundError:
            raise StoreCorruption(path, "indexed file text is missing")
        except UnicodeDecodeError:
            raise StoreCorruption(path, "indexed file text is not valid UTF-8")

    def _iter_blob_files(self) -> Iterable[Path]:
        if not self.blobs_dir.exists():
            return []
        return self.blobs_dir.glob("*/*.txt")

    # -- garbage collection ----------------------------------------------

    def orphans(self, live_versions: Set[int], live_hashes: Set[str]) -> List[Path]:
        """Snapshot dirs, blobs and temp files no live snapshot references."""
        live_digests = {h.split(":", 1)[-1] for h in live_hashes}
        found: List[Path] = []
        if self.snapshots_dir.exists():
            for path in sorted(self.snapshots_dir.iterdir()):
                if path.name.startswith(".tmp-"):
                    found.append(path)
                    continue
                try:
                    version = int(path.name[1:])
                except ValueError:
                    continue
                if version not in live_versions:
                    found.append(path)
        for blob in sorted(self._iter_blob_files()):
            if blob.stem not in live_digests:
                found.append(blob)
        return found

    def collect(self, live_versions: Set[int], live_hashes: Set[str]) -> int:
        removed = 0
        for path in self.orphans(live_versions, live_hashes):
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.debug(f"Collected {removed} unreferenced index artifacts")
        return removed

    def size_bytes(self) -> int:
        if not self.index_dir.exists():
            return 0
        return sum(p.stat().st_size for p in self.index_dir.rglob("*") if p.is_file())

    def clear(self) -> None:
        if self.index_dir.exists():
            shutil.rmtree(self.index_dir)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
