# lazyutils.py - shared constants, configuration & helpers for LazyFS
# One virtual file per mount; replicas are plain directories on local disk.

from __future__ import annotations
import os
import sys
import errno
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

# ------------------------- Public constants -------------------------

HUMAN_NAME = "LazyFS"
FS_NAME = "lazyfs"
FS_SUBTYPE = "lazyfetch"

DEFAULT_FILENAME = "lazy.data"
DEFAULT_SIZE = 1024 * 1024
DEFAULT_MODE = 0o444
DEFAULT_META_ROOT = "node-meta"
DEFAULT_META_EXT = "json"
DEFAULT_NODES = (("node1", "node1"), ("node2", "node2"))
DEFAULT_PATTERN = b"QUOICOUBEH"
DEFAULT_MOUNTPOINT = "./mnt"

# Sidecar files are never edited in place; they are replaced atomically
META_FILE_MODE = 0o444
SEED_FILE_MODE = 0o644

ENV_PREFIX = "LAZYFS_"


# ------------------------- Logging ----------------------------------

def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure the "lazyfs" logger tree once. Output looks like the
    bracketed console lines of the other tools: "[lazyfs.mat] message".
    """
    if level is None:
        level = os.environ.get(ENV_PREFIX + "LOG_LEVEL", "INFO")
    lvl = getattr(logging, str(level).upper(), logging.INFO)

    root = logging.getLogger(FS_NAME)
    root.setLevel(lvl)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(message)s",
                                               datefmt="%H:%M:%S"))
        root.addHandler(handler)
        root.propagate = False
    for h in root.handlers:
        h.setLevel(lvl)
    return root


# ------------------------- Configuration ----------------------------

@dataclass(frozen=True)
class ReplicaNode:
    """A mirror directory expected to hold a real copy of the virtual file."""
    id: str
    path: str

    def path_for(self, name: str) -> str:
        return os.path.join(self.path, name)


@dataclass(frozen=True)
class LazyConfig:
    filename: str = DEFAULT_FILENAME
    size: int = DEFAULT_SIZE
    mode: int = DEFAULT_MODE
    nodes: Tuple[ReplicaNode, ...] = field(
        default_factory=lambda: tuple(ReplicaNode(i, p) for i, p in DEFAULT_NODES))
    meta_root: str = DEFAULT_META_ROOT
    meta_ext: str = DEFAULT_META_EXT
    pattern: bytes = DEFAULT_PATTERN
    seed_replicas: bool = False
    status_port: Optional[int] = None

    def __post_init__(self):
        check_plain_name(self.filename)
        if self.size < 0:
            raise ValueError(f"size must be >= 0, got {self.size}")
        if not self.pattern:
            raise ValueError("pattern must not be empty")
        if not self.meta_ext or "/" in self.meta_ext:
            raise ValueError(f"invalid metadata extension: {self.meta_ext!r}")
        seen = set()
        for node in self.nodes:
            if not node.id:
                raise ValueError("replica node id must not be empty")
            if node.id in seen:
                raise ValueError(f"duplicate replica node id: {node.id}")
            seen.add(node.id)

    def with_overrides(self, **kw) -> "LazyConfig":
        """Copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in kw.items() if v is not None})

    def as_dict(self) -> Dict:
        return {
            "filename": self.filename,
            "size": self.size,
            "mode": oct(self.mode),
            "nodes": [{"id": n.id, "path": n.path} for n in self.nodes],
            "meta_root": self.meta_root,
            "meta_ext": self.meta_ext,
            "seed_replicas": self.seed_replicas,
            "status_port": self.status_port,
        }


def check_plain_name(name: str) -> str:
    """Names are single path components; anything else would escape its root."""
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\0" in name:
        raise ValueError(f"invalid file name: {name!r}")
    return name


def ensure_within_base(base_dir: str, real_path: str) -> None:
    """
    Ensure real_path is inside base_dir; raise OSError(EINVAL) otherwise.
    """
    base = os.path.abspath(base_dir)
    rp = os.path.abspath(real_path)
    if os.path.commonpath([base, rp]) != base:
        raise OSError(errno.EINVAL, f"path escapes {base}", rp)


# ---- replica lists: "id=path,id=path" (env/CLI) or one entry per line (file)

def parse_node(entry: str, index: int = 0) -> ReplicaNode:
    """
    Parse one replica entry. Accepted forms:
      "node1=/srv/a"   -> id node1, path /srv/a
      "node1 /srv/a"   -> same (list-file form)
      "/srv/a"         -> id derived from the basename
    """
    s = entry.strip()
    if not s:
        raise ValueError("empty replica entry")
    if "=" in s:
        nid, path = s.split("=", 1)
    elif len(s.split()) == 2:
        nid, path = s.split()
    else:
        path = s
        nid = os.path.basename(os.path.normpath(s)) or f"node{index + 1}"
    nid, path = nid.strip(), path.strip()
    if not nid or not path:
        raise ValueError(f"bad replica entry: {entry!r}")
    return ReplicaNode(nid, path)


def parse_nodes(spec: str) -> Tuple[ReplicaNode, ...]:
    items = [p for p in spec.split(",") if p.strip()]
    return tuple(parse_node(p, i) for i, p in enumerate(items))


def load_nodes_file(path: str) -> Tuple[ReplicaNode, ...]:
    nodes: List[ReplicaNode] = []
    with open(path, encoding="utf-8") as f:
        for ln in f:
            ln = ln.split("#", 1)[0].strip()
            if ln:
                nodes.append(parse_node(ln, len(nodes)))
    return tuple(nodes)


def _env_int(environ, key: str) -> Optional[int]:
    raw = environ.get(ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw, 0)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX + key} must be an integer, got {raw!r}")


def config_from_env(environ=None, base: Optional[LazyConfig] = None) -> LazyConfig:
    """Apply LAZYFS_* environment overrides on top of base (or the defaults)."""
    env = os.environ if environ is None else environ
    cfg = base or LazyConfig()
    nodes = env.get(ENV_PREFIX + "NODES")
    return cfg.with_overrides(
        filename=env.get(ENV_PREFIX + "FILENAME") or None,
        size=_env_int(env, "SIZE"),
        mode=_env_int(env, "MODE"),
        nodes=parse_nodes(nodes) if nodes else None,
        meta_root=env.get(ENV_PREFIX + "META_ROOT") or None,
        status_port=_env_int(env, "STATUS_PORT"),
    )


def add_config_arguments(ap) -> None:
    """Flags shared by the mount entry point and lazyctl."""
    ap.add_argument("--filename", default=None, help="virtual file name")
    ap.add_argument("--size", type=int, default=None, help="virtual file size in bytes")
    ap.add_argument("--node", action="append", default=None, metavar="ID=PATH",
                    help="replica node (repeatable; order is kept)")
    ap.add_argument("--nodes-file", default=None, help="replica list file, one 'id path' per line")
    ap.add_argument("--meta-root", default=None, help="directory holding sidecar metadata")
    ap.add_argument("--seed", action="store_true", help="create empty replica files that are missing")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")


def config_from_args(args, environ=None) -> LazyConfig:
    cfg = config_from_env(environ)
    nodes = None
    if getattr(args, "nodes_file", None):
        nodes = load_nodes_file(args.nodes_file)
    if getattr(args, "node", None):
        nodes = tuple(parse_node(n, i) for i, n in enumerate(args.node))
    return cfg.with_overrides(
        filename=getattr(args, "filename", None),
        size=getattr(args, "size", None),
        nodes=nodes,
        meta_root=getattr(args, "meta_root", None),
        seed_replicas=True if getattr(args, "seed", False) else None,
        status_port=getattr(args, "status_port", None),
    )
