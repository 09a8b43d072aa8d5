# lazynodes.py - the two nodes LazyFS exposes: one directory holding one file.
# Nodes keep no mutable state; reads go straight to the Materializer.

from __future__ import annotations
import os
import stat
import time
import errno
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from lazyutils import LazyConfig
from lazymeta import FileDescriptor
from lazymat import Materializer

log = logging.getLogger("lazyfs.nodes")

ROOT_INODE = 1
FILE_INODE = 2
DIR_MODE = 0o555


class NotFound(OSError):
    """Lookup of a name the directory does not hold."""

    def __init__(self, name: str):
        super().__init__(errno.ENOENT, os.strerror(errno.ENOENT), name)


class MaterializeFailed(OSError):
    """A read could not be served because materialization failed."""

    def __init__(self, cause: BaseException):
        super().__init__(errno.EIO, f"materialization failed: {cause}")


def _ids() -> Dict[str, int]:
    return {
        "st_uid": os.getuid() if hasattr(os, "getuid") else 0,
        "st_gid": os.getgid() if hasattr(os, "getgid") else 0,
    }


class FileNode:
    def __init__(self, config: LazyConfig, materializer: Materializer):
        self.config = config
        self.materializer = materializer
        self.descriptor = FileDescriptor(
            name=config.filename,
            size=config.size,
            mode=config.mode,
            mod_time=datetime.now(timezone.utc),
        )

    @property
    def name(self) -> str:
        return self.descriptor.name

    def attr(self) -> Dict:
        now = time.time()
        return dict(
            st_ino=FILE_INODE,
            st_mode=(stat.S_IFREG | self.config.mode),
            st_nlink=1,
            st_size=self.config.size,
            st_mtime=now,
            st_atime=now,
            st_ctime=now,
            **_ids(),
        )

    def read(self) -> bytes:
        try:
            return self.materializer.materialize()
        except Exception as e:
            log.error("read of %s failed: %s", self.name, e)
            raise MaterializeFailed(e) from e


class DirNode:
    def __init__(self, config: LazyConfig, materializer: Optional[Materializer] = None):
        self.config = config
        # by default the Materializer tracks exactly the names this directory lists
        self.materializer = materializer or Materializer(config, names=self.names)

    def attr(self) -> Dict:
        return dict(st_ino=ROOT_INODE, st_mode=(stat.S_IFDIR | DIR_MODE), st_nlink=2, **_ids())

    def lookup(self, name: str) -> FileNode:
        log.debug("lookup %s", name)
        if name == self.config.filename:
            return FileNode(self.config, self.materializer)
        raise NotFound(name)

    def list_entries(self) -> List[Dict]:
        log.debug("listing root directory")
        return [{"inode": FILE_INODE, "name": self.config.filename, "type": stat.S_IFREG}]

    def names(self) -> List[str]:
        return [e["name"] for e in self.list_entries()]

