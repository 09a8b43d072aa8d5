"""Tests for lazy materialization onto replica nodes."""

import os
import threading
from unittest.mock import patch

import pytest

from lazymat import (
    CONSISTENT,
    MISSING,
    REGENERATED,
    STALE,
    Materializer,
    PatternSource,
    TargetLocks,
    seed_replicas,
)
from lazymeta import decode

PATTERN = b"QUOICOUBEH"


def _expected(size=1048576):
    return (PATTERN * (size // len(PATTERN) + 1))[:size]


def _read(path):
    with open(path, "rb") as f:
        return f.read()


class TestPatternSource:

    def test_fills_exact_size(self):
        src = PatternSource(PATTERN)
        assert src.content_for("x", 25) == b"QUOICOUBEHQUOICOUBEHQUOIC"
        assert src.content_for("x", 0) == b""
        assert len(src.content_for("x", 1048576)) == 1048576

    def test_empty_pattern_rejected(self):
        with pytest.raises(ValueError):
            PatternSource(b"")


class TestTargetLocks:

    def test_same_target_same_lock(self):
        locks = TargetLocks()
        assert locks.get("node1", "a") is locks.get("node1", "a")
        assert locks.get("node1", "a") is not locks.get("node2", "a")
        assert len(locks) == 2


class TestMaterialize:

    def test_content_is_deterministic(self, config):
        mat = Materializer(config)
        assert mat.materialize() == mat.materialize() == _expected()

    def test_first_access_writes_every_reachable_replica(self, seeded):
        mat = Materializer(seeded)
        data = mat.materialize()

        assert data == _expected()
        for node in seeded.nodes:
            assert _read(node.path_for("lazy.data")) == _expected()
        assert mat.last_report.count(REGENERATED) == 2
        reasons = {r.node: r.reason for r in mat.last_report.results}
        # node2 is checked against the record node1 just wrote
        assert reasons == {"node1": "no-metadata", "node2": "size differs"}
        desc = mat.sidecars.load("lazy.data")
        assert desc.size == 1048576
        assert desc.name == "lazy.data"

    def test_second_call_performs_no_writes(self, seeded):
        mat = Materializer(seeded)
        mat.materialize()
        with patch.object(Materializer, "_write_replica") as write:
            mat.materialize()
        write.assert_not_called()
        assert mat.last_report.writes == 0
        assert mat.last_report.count(CONSISTENT) == 2

    def test_replica_mode_is_preserved(self, seeded):
        path = seeded.nodes[0].path_for("lazy.data")
        os.chmod(path, 0o600)
        Materializer(seeded).materialize()
        assert os.stat(path).st_mode & 0o777 == 0o600

    def test_missing_replica_is_skipped(self, config):
        node1 = config.nodes[0]
        os.makedirs(node1.path)
        with open(node1.path_for("lazy.data"), "wb"):
            pass

        mat = Materializer(config)
        data = mat.materialize()

        assert data == _expected()
        outcomes = {r.node: r.outcome for r in mat.last_report.results}
        assert outcomes == {"node1": REGENERATED, "node2": MISSING}
        assert not os.path.exists(config.nodes[1].path)

    def test_nothing_reachable_still_returns_content(self, config):
        mat = Materializer(config)
        assert mat.materialize() == _expected()
        assert mat.last_report.count(MISSING) == 2
        assert not os.path.exists(config.meta_root)

    def test_changed_replica_is_regenerated(self, seeded):
        mat = Materializer(seeded)
        mat.materialize()
        victim = seeded.nodes[1].path_for("lazy.data")
        with open(victim, "ab") as f:
            f.write(b"tampered")

        mat.materialize()

        results = {r.node: r for r in mat.last_report.results}
        assert results["node1"].outcome == CONSISTENT
        assert results["node2"].outcome == REGENERATED
        assert results["node2"].reason == "size differs"
        assert _read(victim) == _expected()

    def test_corrupt_metadata_triggers_regeneration(self, seeded):
        mat = Materializer(seeded)
        mat.materialize()
        meta = mat.sidecars.path_for("lazy.data")
        os.chmod(meta, 0o644)
        with open(meta, "wb") as f:
            f.write(b"garbage")

        mat.materialize()

        outcomes = {r.node: r.outcome for r in mat.last_report.results}
        assert outcomes == {"node1": REGENERATED, "node2": CONSISTENT}
        assert decode(_read(meta)).size == 1048576

    def test_metadata_write_failure_aborts_run(self, seeded):
        # a plain file where the metadata directory should be
        with open(seeded.meta_root, "wb"):
            pass
        mat = Materializer(seeded)

        with pytest.raises(OSError):
            mat.materialize()

        assert mat.last_report.error
        assert mat.last_report.results == []
        assert mat.stats["failed_runs"] == 1
        # node2 was never reached
        assert os.path.getsize(seeded.nodes[1].path_for("lazy.data")) == 0

    def test_content_write_failure_aborts_run(self, seeded):
        mat = Materializer(seeded)
        with patch.object(Materializer, "_write_replica",
                          side_effect=PermissionError(13, "Permission denied")) as write:
            with pytest.raises(PermissionError):
                mat.materialize()
        assert write.call_count == 1
        assert not os.path.exists(mat.sidecars.path_for("lazy.data"))

    def test_bad_tracked_name_counts_as_failed_run(self, seeded):
        mat = Materializer(seeded, names=lambda: ["../escape"])
        with pytest.raises(ValueError):
            mat.materialize()
        assert "invalid file name" in mat.last_report.error
        assert mat.stats["failed_runs"] == 1

    def test_stats_accumulate(self, seeded):
        mat = Materializer(seeded)
        mat.materialize()
        mat.materialize()
        assert mat.stats["runs"] == 2
        assert mat.stats["regenerated"] == 2
        assert mat.stats["consistent"] == 2

    def test_source_with_wrong_length_is_refused(self, config):
        class Short(PatternSource):
            def content_for(self, name, size):
                return b"x"

        with pytest.raises(ValueError):
            Materializer(config, source=Short(b"x")).materialize()

    def test_tracked_names_come_from_callable(self, seeded):
        extra = "other.data"
        for node in seeded.nodes:
            with open(node.path_for(extra), "wb"):
                pass
        mat = Materializer(seeded, names=lambda: ["lazy.data", extra])
        mat.materialize()
        assert mat.last_report.count(REGENERATED) == 4
        assert os.path.exists(mat.sidecars.path_for(extra))

    def test_concurrent_calls_regenerate_each_replica_once(self, seeded):
        mat = Materializer(seeded)
        results, errors = [], []
        barrier = threading.Barrier(8)

        def run():
            barrier.wait()
            try:
                results.append(mat.materialize())
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 8 and all(r == _expected() for r in results)
        assert mat.stats["regenerated"] == 2
        assert mat.stats["runs"] == 8
        for node in seeded.nodes:
            assert _read(node.path_for("lazy.data")) == _expected()
            assert not [n for n in os.listdir(node.path) if ".lazy-" in n]


class TestInspect:

    def test_reports_without_writing(self, seeded):
        mat = Materializer(seeded)
        before = [os.stat(n.path_for("lazy.data")).st_size for n in seeded.nodes]

        results = mat.inspect()

        assert [r.outcome for r in results] == [STALE, STALE]
        assert [os.stat(n.path_for("lazy.data")).st_size for n in seeded.nodes] == before
        assert not os.path.exists(mat.sidecars.path_for("lazy.data"))

    def test_after_materialize_everything_is_consistent(self, seeded):
        mat = Materializer(seeded)
        mat.materialize()
        assert [r.outcome for r in mat.inspect()] == [CONSISTENT, CONSISTENT]


def test_seed_replicas_creates_only_missing(config):
    os.makedirs(config.nodes[0].path)
    existing = config.nodes[0].path_for("lazy.data")
    with open(existing, "wb") as f:
        f.write(b"keep")

    created = seed_replicas(config)

    assert created == [config.nodes[1].path_for("lazy.data")]
    assert _read(existing) == b"keep"
    assert os.path.getsize(created[0]) == 0
