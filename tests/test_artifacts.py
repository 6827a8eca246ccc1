import json
import logging
from pathlib import Path

from ingestor.artifacts import META_FILE, SNAPSHOT_FILE, RunArtifacts


def test_create_writes_initial_meta(tmp_path: Path) -> None:
    artifacts = RunArtifacts.create(tmp_path, run_id="0123456789abcdef")
    assert artifacts.root.parent == tmp_path
    assert artifacts.root.name.endswith("_01234567")
    meta = json.loads((artifacts.root / META_FILE).read_text(encoding="utf-8"))
    assert meta["run_id"] == "0123456789abcdef"
    assert meta["run_dir"] == str(artifacts.root)
    assert meta["started_at_ms"] > 0


def test_record_merges_fields(tmp_path: Path) -> None:
    artifacts = RunArtifacts.create(tmp_path)
    artifacts.record(ipc_path="/tmp/anvil.ipc")
    artifacts.record(channel="mempool_alpha")
    meta = json.loads((artifacts.root / META_FILE).read_text(encoding="utf-8"))
    assert meta["ipc_path"] == "/tmp/anvil.ipc"
    assert meta["channel"] == "mempool_alpha"
    assert meta["run_id"] == artifacts.run_id


def test_finish_writes_snapshot_and_exit_code(tmp_path: Path) -> None:
    artifacts = RunArtifacts.create(tmp_path)
    snapshot = {"stats": {"processed": 3, "filtered": 1, "published": 1, "errors": 0}}
    path = artifacts.finish(2, snapshot)
    assert path == artifacts.root / SNAPSHOT_FILE
    assert json.loads(path.read_text(encoding="utf-8")) == snapshot
    meta = json.loads((artifacts.root / META_FILE).read_text(encoding="utf-8"))
    assert meta["exit_code"] == 2
    assert meta["ended_at_ms"] >= meta["started_at_ms"]


def test_configure_logging_writes_run_log(tmp_path: Path) -> None:
    artifacts = RunArtifacts.create(tmp_path)
    logger = artifacts.configure_logging()
    try:
        logging.getLogger("ingestor.pipeline").info("pipeline up")
        for handler in logger.handlers:
            handler.flush()
        text = artifacts.log_path.read_text(encoding="utf-8")
        assert "INFO ingestor.pipeline pipeline up" in text
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
