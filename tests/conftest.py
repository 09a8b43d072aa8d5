import logging
import os

import pytest

from lazyutils import LazyConfig, ReplicaNode


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("LAZYFS_"):
            monkeypatch.delenv(key)


@pytest.fixture
def config(tmp_path):
    return LazyConfig(
        nodes=(ReplicaNode("node1", str(tmp_path / "node1")),
               ReplicaNode("node2", str(tmp_path / "node2"))),
        meta_root=str(tmp_path / "node-meta"),
    )


@pytest.fixture
def seeded(config):
    """Replica directories holding empty placeholder copies of the file."""
    for node in config.nodes:
        os.makedirs(node.path, exist_ok=True)
        path = node.path_for(config.filename)
        with open(path, "wb"):
            pass
        os.chmod(path, 0o644)
    return config


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    # handlers bind the stream captured by the test that created them
    logger = logging.getLogger("lazyfs")
    for h in list(logger.handlers):
        logger.removeHandler(h)
