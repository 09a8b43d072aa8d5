# lazyfs.py - LazyFS: one lazily materialized virtual file behind a FUSE mount.
# The file's bytes are produced on open and mirrored onto every configured
# replica directory whose copy no longer matches its sidecar metadata.
#
# Layout on disk (all paths configurable):
#   <node>/<filename>                    replica copies, one per node
#   <meta_root>/<filename>-meta.json     sidecar shared by all replicas

import os
import sys
import errno
import argparse
import signal
import logging
import platform
import threading
import subprocess
from typing import Callable, Dict, Optional

from fuse import FUSE, Operations, FuseOSError

from lazyutils import (
    FS_NAME,
    FS_SUBTYPE,
    HUMAN_NAME,
    DEFAULT_MOUNTPOINT,
    LazyConfig,
    add_config_arguments,
    config_from_args,
    setup_logging,
)
from lazymat import seed_replicas
import lazystatus
from lazynodes import DirNode, FileNode, NotFound

log = logging.getLogger("lazyfs.fs")

# First handle number handed out by open()
_FIRST_FH = 1000


# ------------------------------ FUSE FS ----------------------------------

class LazyFS(Operations):
    """
    Path-based fusepy front for the node tree. Only "/" and "/<filename>"
    exist; everything is read-only.
    """

    def __init__(self, config: LazyConfig, root: Optional[DirNode] = None):
        self.config = config
        self.root = root or DirNode(config)
        self._lock = threading.Lock()
        self._next_fh = _FIRST_FH
        # per-open buffers: one materialization per open, reads are slices
        self.fh_map: Dict[int, bytes] = {}

    @property
    def materializer(self):
        return self.root.materializer

    # ---- helpers ---------------------------------------------------------

    def _resolve(self, path: str):
        if path in ("/", ""):
            return self.root
        name = path.lstrip("/")
        if "/" in name:
            raise FuseOSError(errno.ENOENT)
        try:
            return self.root.lookup(name)
        except NotFound:
            raise FuseOSError(errno.ENOENT)

    def _file(self, path: str) -> FileNode:
        node = self._resolve(path)
        if not isinstance(node, FileNode):
            raise FuseOSError(errno.EISDIR)
        return node

    def _alloc_fh(self, data: bytes) -> int:
        with self._lock:
            fh = self._next_fh
            self._next_fh += 1
            self.fh_map[fh] = data
            return fh

    # ---- FUSE ops --------------------------------------------------------

    def getattr(self, path, fh=None):
        return self._resolve(path).attr()

    def readdir(self, path, fh):
        node = self._resolve(path)
        if isinstance(node, FileNode):
            raise FuseOSError(errno.ENOTDIR)
        return [".", ".."] + [e["name"] for e in node.list_entries()]

    def access(self, path, amode):
        self._resolve(path)
        if amode & os.W_OK:
            raise FuseOSError(errno.EROFS)
        return 0

    def open(self, path, flags):
        node = self._file(path)
        if (flags & os.O_WRONLY) or (flags & os.O_RDWR):
            raise FuseOSError(errno.EROFS)
        try:
            data = node.read()
        except OSError as e:
            raise FuseOSError(e.errno or errno.EIO)
        return self._alloc_fh(data)

    def read(self, path, size, offset, fh):
        data = self.fh_map.get(fh)
        if data is None:
            raise FuseOSError(errno.EBADF)
        return data[offset:offset + size]

    def release(self, path, fh):
        with self._lock:
            self.fh_map.pop(fh, None)
        return 0

    def statfs(self, path):
        size = self.config.size
        return {
            "f_bsize": 4096,
            "f_frsize": 4096,
            "f_blocks": (size + 4095) // 4096,
            "f_bfree": 0,
            "f_bavail": 0,
            "f_files": 2,
            "f_ffree": 0,
            "f_favail": 0,
            "f_flag": 0,
            "f_namemax": 255,
        }


# ------------------------------ mount glue --------------------------------

def _ensure_empty_mountpoint(path: str) -> None:
    """
    Fail fast if the mountpoint is not an empty directory or is already a FUSE mount.
    """
    if os.path.exists(path):
        if not os.path.isdir(path):
            raise RuntimeError(f"Mountpoint exists but is not a directory: {path}")
        if os.path.ismount(path):
            raise RuntimeError(f"Mountpoint is already mounted: {path}")
        if os.listdir(path):
            raise RuntimeError(f"Mountpoint must be empty: {path}")
    else:
        os.makedirs(path, exist_ok=True)


def _ensure_not_nested(mountpoint: str, config: LazyConfig) -> None:
    """Replicas and metadata must live outside the mount (no recursion)."""
    mp = os.path.abspath(mountpoint)
    for label, p in [("metadata root", config.meta_root)] + [(f"replica {n.id}", n.path) for n in config.nodes]:
        ap = os.path.abspath(p)
        if ap == mp or ap.startswith(mp + os.sep):
            raise RuntimeError(f"{label} may not live inside the mountpoint: {ap}")
        if mp.startswith(ap + os.sep):
            raise RuntimeError(f"Mountpoint may not live inside the {label}: {ap}")


def unmount(mountpoint: str) -> None:
    if platform.system() == "Darwin":
        cmds = [["umount", mountpoint]]
    else:
        cmds = [["fusermount", "-u", mountpoint], ["fusermount3", "-u", mountpoint]]
    last = None
    for cmd in cmds:
        try:
            subprocess.run(cmd, check=True, capture_output=True)
            return
        except FileNotFoundError as e:
            last = e
        except subprocess.CalledProcessError as e:
            last = e
            break
    raise RuntimeError(f"unmount of {mountpoint} failed: {last}")


class MountController:
    """
    Owns the mount lifecycle: start(mountpoint, config) / stop().
    Signals are translated here; the filesystem itself never sees them.
    """

    def __init__(self, unmounter: Callable[[str], None] = unmount, fuse_runner=None):
        self._unmount = unmounter
        self._fuse = fuse_runner or FUSE
        self._thread: Optional[threading.Thread] = None
        self.mountpoint: Optional[str] = None
        self.fs: Optional[LazyFS] = None
        self.status_server = None
        # set when the FUSE loop fails; wait() re-raises it
        self.error: Optional[BaseException] = None

    def start(self, mountpoint: str, config: LazyConfig, status_port: Optional[int] = None) -> LazyFS:
        mountpoint = os.path.abspath(mountpoint)
        _ensure_empty_mountpoint(mountpoint)
        _ensure_not_nested(mountpoint, config)
        os.makedirs(config.meta_root, exist_ok=True)

        fs = LazyFS(config)
        if config.seed_replicas:
            seed_replicas(config, fs.root.names())

        port = status_port if status_port is not None else config.status_port
        if port is not None:
            try:
                self.status_server = lazystatus.start_status_server(fs.materializer, port)
            except OSError as e:
                log.warning("status server start failed: %s", e)

        self.mountpoint, self.fs = mountpoint, fs
        log.info("mounting %s at %s (%s)", HUMAN_NAME, mountpoint, config.filename)
        self._thread = threading.Thread(target=self._serve, name="lazyfs-fuse", daemon=True)
        self._thread.start()
        return fs

    def _serve(self) -> None:
        try:
            self._fuse(self.fs, self.mountpoint, foreground=True, nothreads=False,
                       ro=True, fsname=FS_NAME, subtype=FS_SUBTYPE)
        except RuntimeError as e:
            log.error("serve failed: %s", e)
            self.error = e
        finally:
            log.info("filesystem at %s is no longer served", self.mountpoint)

    def wait(self, poll: float = 0.5) -> None:
        # short joins keep the main thread free to run signal handlers
        while self._thread is not None and self._thread.is_alive():
            self._thread.join(poll)
        if self.error is not None:
            raise RuntimeError(f"serving {self.mountpoint} failed: {self.error}") from self.error

    def stop(self) -> None:
        if self.mountpoint is None:
            return
        if self.status_server is not None:
            self.status_server.shutdown()
            self.status_server = None
        if self._thread is not None and self._thread.is_alive():
            log.info("unmounting %s", self.mountpoint)
            try:
                self._unmount(self.mountpoint)
            except RuntimeError as e:
                log.error("failed to unmount: %s", e)

    def install_signal_handlers(self) -> None:
        def _handler(signum, _frame):
            log.info("received %s, unmounting...", signal.Signals(signum).name)
            self.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, _handler)


# Convenience runner
def mount(mountpoint: str, config: LazyConfig) -> None:
    ctl = MountController()
    ctl.install_signal_handlers()
    ctl.start(mountpoint, config)
    log.info("filesystem is now available")
    try:
        ctl.wait()
    finally:
        ctl.stop()


def build_parser():
    ap = argparse.ArgumentParser(description=f"{HUMAN_NAME} (lazily materialized virtual file)")
    ap.add_argument("mountpoint", nargs="?", default=DEFAULT_MOUNTPOINT, help="mount directory")
    add_config_arguments(ap)
    ap.add_argument("--status-port", type=int, default=None,
                    help="serve /healthz, /status and /check on this port")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        config = config_from_args(args)
    except (OSError, ValueError) as e:
        log.error("bad configuration: %s", e)
        return 2
    try:
        mount(args.mountpoint, config)
    except RuntimeError as e:
        log.error("mount failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
