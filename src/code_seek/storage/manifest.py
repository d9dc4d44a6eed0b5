"""Manifest and chunk metadata records.

The manifest is the single source of truth for what is indexed: every
file with its content hash, mtime and ordered chunk identities, plus the
model fingerprint the embeddings belong to and a version number that only
grows. Files own their chunk-identity lists; chunk records point back to
files by path only.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple


@dataclass(frozen=True)
class ChunkRecord:
    """Metadata for one chunk in one snapshot."""

    chunk_id: str
    path: str
    kind: str
    start_byte: int
    end_byte: int
    line_start: int
    line_end: int
    name: Optional[str] = None
    part: Optional[int] = None
    token_estimate: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "path": self.path,
            "kind": self.kind,
            "start_byte": self.start_byte,
            "end_byte": self.end_byte,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "name": self.name,
            "part": self.part,
            "token_estimate": self.token_estimate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkRecord":
        return cls(
            chunk_id=data["chunk_id"],
            path=data["path"],
            kind=data["kind"],
            start_byte=int(data["start_byte"]),
            end_byte=int(data["end_byte"]),
            line_start=int(data["line_start"]),
            line_end=int(data["line_end"]),
            name=data.get("name"),
            part=data.get("part"),
            token_estimate=int(data.get("token_estimate", 0)),
        )


@dataclass(frozen=True)
class FileEntry:
    """One indexed source file."""

    path: str
    content_hash: str
    mtime: float
    size: int
    language: str
    chunk_ids: Tuple[str, ...] = ()
    best_effort: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "mtime": self.mtime,
            "size": self.size,
            "language": self.language,
            "chunk_ids": list(self.chunk_ids),
            "best_effort": self.best_effort,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileEntry":
        return cls(
            path=data["path"],
            content_hash=data["content_hash"],
            mtime=float(data["mtime"]),
            size=int(data["size"]),
            language=data.get("language", "unknown"),
            chunk_ids=tuple(data.get("chunk_ids", [])),
            best_effort=bool(data.get("best_effort", False)),
        )


@dataclass(frozen=True)
class Manifest:
    """Versioned snapshot of what is currently indexed."""

    version: int
    model_fingerprint: str
    files: Dict[str, FileEntry] = field(default_factory=dict)
    created_at: str = ""

    @classmethod
    def empty(cls, model_fingerprint: str) -> "Manifest":
        return cls(version=0, model_fingerprint=model_fingerprint)

    def iter_chunk_ids(self) -> Iterator[str]:
        for path in sorted(self.files):
            yield from self.files[path].chunk_ids

    def chunk_id_set(self) -> set:
        return set(self.iter_chunk_ids())

    def content_hashes(self) -> set:
        return {entry.content_hash for entry in self.files.values()}

    def same_content(self, other: "Manifest") -> bool:
        """Equal files, chunks and model; version and timestamp ignored."""
        return (
            self.model_fingerprint == other.model_fingerprint
            and self.files == other.files
        )

    def body(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "model_fingerprint": self.model_fingerprint,
            "created_at": self.created_at,
            "files": [self.files[path].to_dict() for path in sorted(self.files)],
        }

    def to_dict(self) -> Dict[str, Any]:
        body = self.body()
        return {"manifest": body, "checksum": checksum(body)}

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "Manifest":
        files = [FileEntry.from_dict(item) for item in body.get("files", [])]
        return cls(
            version=int(body["version"]),
            model_fingerprint=body["model_fingerprint"],
            files={entry.path: entry for entry in files},
            created_at=body.get("created_at", ""),
        )


def checksum(body: Dict[str, Any]) -> str:
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
