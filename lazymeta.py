# lazymeta.py - descriptor model, sidecar codec & consistency checks for LazyFS
#
# Sidecar layout (one record per tracked name, shared by all replicas):
#   <meta_root>/<name>-meta.<ext>
# holding a small JSON object:
#   {"name": "lazy.data", "size": 1048576, "mode": 292,
#    "mod_time": "2026-10-19T20:22:03.512345+00:00"}

from __future__ import annotations
import os
import json
import stat
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from lazyutils import META_FILE_MODE, check_plain_name, ensure_within_base

log = logging.getLogger("lazyfs.meta")

# Allowed drift between a replica's mtime and the recorded one (seconds)
MTIME_TOLERANCE = 1.0

_FIELDS = ("name", "size", "mode", "mod_time")


class DecodeError(ValueError):
    """Sidecar bytes are not a complete, well-formed descriptor."""


@dataclass(frozen=True)
class FileDescriptor:
    name: str
    size: int
    mode: int
    mod_time: datetime

    def validate(self) -> "FileDescriptor":
        if not isinstance(self.name, str) or not self.name:
            raise ValueError("descriptor name must be a non-empty string")
        if isinstance(self.size, bool) or not isinstance(self.size, int) or self.size < 0:
            raise ValueError(f"descriptor size must be a non-negative int, got {self.size!r}")
        if isinstance(self.mode, bool) or not isinstance(self.mode, int) or self.mode < 0:
            raise ValueError(f"descriptor mode must be a non-negative int, got {self.mode!r}")
        if not isinstance(self.mod_time, datetime) or self.mod_time.tzinfo is None:
            raise ValueError("descriptor mod_time must be a timezone-aware datetime")
        return self

    @classmethod
    def from_stat(cls, name: str, st: os.stat_result) -> "FileDescriptor":
        """Descriptor of what is actually on disk (permission bits only)."""
        return cls(
            name=name,
            size=int(st.st_size),
            mode=stat.S_IMODE(st.st_mode),
            mod_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )


# ------------------------------ Codec -----------------------------------

def encode(desc: FileDescriptor) -> bytes:
    desc.validate()
    payload = {
        "name": desc.name,
        "size": desc.size,
        "mode": desc.mode,
        "mod_time": desc.mod_time.isoformat(),
    }
    return (json.dumps(payload, ensure_ascii=False, indent=2) + "\n").encode("utf-8")


def decode(data: bytes) -> FileDescriptor:
    try:
        obj = json.loads(data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"metadata is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise DecodeError("metadata must be a JSON object")
    missing = [k for k in _FIELDS if obj.get(k) is None]
    if missing:
        raise DecodeError(f"metadata missing fields: {', '.join(missing)}")

    raw_time = obj["mod_time"]
    if not isinstance(raw_time, str):
        raise DecodeError(f"mod_time must be an ISO-8601 string, got {raw_time!r}")
    try:
        mod_time = datetime.fromisoformat(raw_time)
    except ValueError as e:
        raise DecodeError(f"bad mod_time {raw_time!r}") from e
    if mod_time.tzinfo is None:
        # naive stamps are taken as UTC
        mod_time = mod_time.replace(tzinfo=timezone.utc)

    try:
        return FileDescriptor(
            name=obj["name"],
            size=obj["size"],
            mode=obj["mode"],
            mod_time=mod_time,
        ).validate()
    except ValueError as e:
        raise DecodeError(str(e)) from e


# --------------------------- Consistency --------------------------------

def diverging_field(local: FileDescriptor, persisted: FileDescriptor) -> Optional[str]:
    """
    First field on which local and persisted disagree, checked in order
    name, size, mode, mod_time. None when they agree.
    """
    if local.name != persisted.name:
        return "name"
    if local.size != persisted.size:
        return "size"
    if local.mode != persisted.mode:
        return "mode"
    ahead = (local.mod_time - persisted.mod_time).total_seconds()
    behind = (persisted.mod_time - local.mod_time).total_seconds()
    if ahead > MTIME_TOLERANCE or behind > MTIME_TOLERANCE:
        return "mod_time"
    return None


def is_consistent(local: FileDescriptor, persisted: FileDescriptor) -> bool:
    field_name = diverging_field(local, persisted)
    if field_name is None:
        log.debug("metadata matches for %s", local.name)
        return True
    log.info("metadata mismatch on %s: %s local=%r recorded=%r", local.name, field_name,
             getattr(local, field_name), getattr(persisted, field_name))
    return False


class Verdict(str, Enum):
    CONSISTENT = "consistent"
    STALE = "stale"
    NO_METADATA = "no-metadata"


# ------------------------------ Sidecars --------------------------------

class SidecarStore:
    """Reads and atomically replaces sidecar records under one metadata root."""

    def __init__(self, root: str, ext: str = "json"):
        self.root = os.path.abspath(root)
        self.ext = ext

    def path_for(self, name: str) -> str:
        check_plain_name(name)
        p = os.path.join(self.root, f"{name}-meta.{self.ext}")
        ensure_within_base(self.root, p)
        return p

    def load(self, name: str) -> FileDescriptor:
        """Raises OSError when unreadable and DecodeError when malformed."""
        with open(self.path_for(name), "rb") as f:
            return decode(f.read())

    def save(self, desc: FileDescriptor) -> str:
        path = self.path_for(desc.name)
        data = encode(desc)
        os.makedirs(self.root, exist_ok=True)
        tmp = f"{path}.tmp-{os.getpid()}-{threading.get_ident()}"
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, META_FILE_MODE)
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        log.debug("wrote metadata %s", path)
        return path

    def check(self, local: FileDescriptor) -> Tuple[Verdict, Optional[str]]:
        """
        Compare a replica's on-disk descriptor with the recorded one.
        Returns (verdict, detail); detail is the diverging field for STALE
        and the load error for NO_METADATA.
        """
        try:
            persisted = self.load(local.name)
        except FileNotFoundError:
            log.info("no metadata recorded for %s", local.name)
            return Verdict.NO_METADATA, "absent"
        except DecodeError as e:
            log.warning("unusable metadata for %s: %s", local.name, e)
            return Verdict.NO_METADATA, str(e)
        except OSError as e:
            log.warning("cannot read metadata for %s: %s", local.name, e)
            return Verdict.NO_METADATA, str(e)
        if is_consistent(local, persisted):
            return Verdict.CONSISTENT, None
        return Verdict.STALE, diverging_field(local, persisted)
