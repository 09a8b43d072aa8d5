# lazymat.py - lazy materialization of the virtual file onto replica nodes
#
# Every materialize() call:
#   1. builds the canonical content (deterministic, same bytes every call)
#   2. for each tracked name x each replica node, under that pair's lock:
#        stat replica -> compare with sidecar -> rewrite content + sidecar if stale
#   3. returns the canonical content
# A failed stat skips the pair; a failed write aborts the whole call.

from __future__ import annotations
import os
import stat
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from lazyutils import SEED_FILE_MODE, LazyConfig, ReplicaNode, check_plain_name
from lazymeta import FileDescriptor, SidecarStore, Verdict

log = logging.getLogger("lazyfs.mat")

# Outcomes for one (replica node, name) pair
MISSING = "missing"
CONSISTENT = "consistent"
REGENERATED = "regenerated"
STALE = "stale"  # inspect() only: would be regenerated


# --------------------------- Content sources ----------------------------

class ContentSource:
    """Where canonical bytes come from. Implementations must be deterministic."""

    def content_for(self, name: str, size: int) -> bytes:
        raise NotImplementedError


class PatternSource(ContentSource):
    """Placeholder content: `pattern` repeated and cut to exactly `size` bytes."""

    def __init__(self, pattern: bytes):
        if not pattern:
            raise ValueError("pattern must not be empty")
        self.pattern = bytes(pattern)

    def content_for(self, name: str, size: int) -> bytes:
        reps, rest = divmod(size, len(self.pattern))
        return self.pattern * reps + self.pattern[:rest]


# ------------------------------ Locking ---------------------------------

class TargetLocks:
    """One lock per (node id, name), created on first use and kept."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def get(self, node_id: str, name: str) -> threading.Lock:
        key = (node_id, name)
        with self._guard:
            lk = self._locks.get(key)
            if lk is None:
                lk = threading.Lock()
                self._locks[key] = lk
            return lk

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# ------------------------------ Reports ---------------------------------

@dataclass
class PairResult:
    node: str
    name: str
    outcome: str
    reason: Optional[str] = None

    def as_dict(self) -> Dict:
        return {"node": self.node, "name": self.name, "outcome": self.outcome, "reason": self.reason}


@dataclass
class MaterializeReport:
    started: float = field(default_factory=time.time)
    finished: Optional[float] = None
    results: List[PairResult] = field(default_factory=list)
    error: Optional[str] = None

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def writes(self) -> int:
        return self.count(REGENERATED)

    def as_dict(self) -> Dict:
        return {
            "started": self.started,
            "finished": self.finished,
            "error": self.error,
            "regenerated": self.count(REGENERATED),
            "consistent": self.count(CONSISTENT),
            "missing": self.count(MISSING),
            "results": [r.as_dict() for r in self.results],
        }


# ---------------------------- Materializer ------------------------------

class Materializer:
    """
    Owns canonical content generation and every write to replica paths
    and to the metadata root. Safe to call from concurrent FUSE threads.
    """

    def __init__(self, config: LazyConfig,
                 source: Optional[ContentSource] = None,
                 names: Optional[Callable[[], Iterable[str]]] = None):
        self.config = config
        self.source = source or PatternSource(config.pattern)
        self.sidecars = SidecarStore(config.meta_root, config.meta_ext)
        self._names = names or (lambda: [config.filename])
        self._locks = TargetLocks()
        self._stats_lock = threading.Lock()
        self.stats = {"runs": 0, "failed_runs": 0, "regenerated": 0, "consistent": 0, "missing": 0}
        self.last_report: Optional[MaterializeReport] = None

    # ---- public ------------------------------------------------------------

    def canonical_content(self) -> bytes:
        data = self.source.content_for(self.config.filename, self.config.size)
        if len(data) != self.config.size:
            raise ValueError(f"content source returned {len(data)} bytes, expected {self.config.size}")
        return data

    def materialize(self) -> bytes:
        log.info("lazy fetch triggered for %s", self.config.filename)
        data = self.canonical_content()
        report = MaterializeReport()
        try:
            for name in self.tracked_names():
                for node in self.config.nodes:
                    report.results.append(self._sync_pair(node, name, data))
        except Exception as e:
            report.error = str(e) or type(e).__name__
            raise
        finally:
            report.finished = time.time()
            self._record(report)
        return data

    def inspect(self) -> List[PairResult]:
        """Same stat + check as materialize(), but never writes."""
        out = []
        for name in self.tracked_names():
            for node in self.config.nodes:
                local = self._stat_replica(node, name)
                if local is None:
                    out.append(PairResult(node.id, name, MISSING))
                    continue
                verdict, detail = self.sidecars.check(local)
                if verdict is Verdict.CONSISTENT:
                    out.append(PairResult(node.id, name, CONSISTENT))
                else:
                    out.append(PairResult(node.id, name, STALE, _reason(verdict, detail)))
        return out

    def tracked_names(self) -> List[str]:
        return [check_plain_name(n) for n in self._names()]

    # ---- per pair ----------------------------------------------------------

    def _stat_replica(self, node: ReplicaNode, name: str) -> Optional[FileDescriptor]:
        path = node.path_for(name)
        try:
            st = os.stat(path)
        except OSError as e:
            log.warning("cannot stat %s on %s (%s), skipping", name, node.id, e.strerror or e)
            return None
        if not stat.S_ISREG(st.st_mode):
            log.warning("%s on %s is not a regular file, skipping", name, node.id)
            return None
        return FileDescriptor.from_stat(name, st)

    def _sync_pair(self, node: ReplicaNode, name: str, data: bytes) -> PairResult:
        with self._locks.get(node.id, name):
            local = self._stat_replica(node, name)
            if local is None:
                return PairResult(node.id, name, MISSING)

            verdict, detail = self.sidecars.check(local)
            if verdict is Verdict.CONSISTENT:
                log.debug("%s on %s matches its metadata, skipping generation", name, node.id)
                return PairResult(node.id, name, CONSISTENT)

            path = node.path_for(name)
            written = self._write_replica(path, data, local.mode)
            desc = FileDescriptor.from_stat(name, written)
            try:
                self.sidecars.save(desc)
            except OSError as e:
                log.error("failed to write metadata for %s: %s", name, e)
                raise
            reason = _reason(verdict, detail)
            log.info("regenerated %s on %s (%s)", name, node.id, reason)
            return PairResult(node.id, name, REGENERATED, reason)

    def _write_replica(self, path: str, data: bytes, mode: int) -> os.stat_result:
        """Replace path with data atomically, keeping its permission bits."""
        tmp = f"{path}.lazy-{os.getpid()}-{threading.get_ident()}"
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, mode)
            os.replace(tmp, path)
            return os.stat(path)
        except OSError as e:
            log.error("failed to write content to %s: %s", path, e)
            try:
                os.remove(tmp)
            except FileNotFoundError:
                pass
            raise

    def _record(self, report: MaterializeReport) -> None:
        with self._stats_lock:
            self.last_report = report
            self.stats["runs"] += 1
            if report.error:
                self.stats["failed_runs"] += 1
            for outcome in (REGENERATED, CONSISTENT, MISSING):
                self.stats[outcome] += report.count(outcome)


def _reason(verdict: Verdict, detail: Optional[str]) -> str:
    if verdict is Verdict.NO_METADATA:
        return "no-metadata"
    return f"{detail} differs"


def seed_replicas(config: LazyConfig, names: Optional[Iterable[str]] = None) -> List[str]:
    """Create empty placeholder files for replicas that do not exist yet."""
    created = []
    for name in (names or [config.filename]):
        for node in config.nodes:
            os.makedirs(node.path, exist_ok=True)
            path = node.path_for(check_plain_name(name))
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, SEED_FILE_MODE)
            except FileExistsError:
                continue
            os.close(fd)
            created.append(path)
            log.info("seeded empty replica %s", path)
    return created
