from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

META_FILE = "run_meta.json"
SNAPSHOT_FILE = "pipeline_snapshot.json"


@dataclass
class RunArtifacts:
    """Files one ingestor run leaves behind: logs/run.log, run_meta.json, pipeline_snapshot.json."""

    root: Path
    run_id: str
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, base_dir: Path, run_id: Optional[str] = None) -> "RunArtifacts":
        run_id = run_id or uuid.uuid4().hex
        root = Path(base_dir) / f"{time.strftime('%Y%m%d_%H%M%S')}_{run_id[:8]}"
        root.mkdir(parents=True, exist_ok=True)
        artifacts = cls(root=root, run_id=run_id)
        artifacts.record(run_id=run_id, run_dir=str(root), started_at_ms=int(time.time() * 1000))
        return artifacts

    @property
    def log_path(self) -> Path:
        return self.root / "logs" / "run.log"

    def configure_logging(self, level: int = logging.INFO) -> logging.Logger:
        """Route every `ingestor.*` logger to run.log and stderr."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        logger = logging.getLogger("ingestor")
        logger.setLevel(level)
        logger.handlers.clear()

        fmt = logging.Formatter(LOG_FORMAT)
        for handler in (logging.FileHandler(self.log_path, encoding="utf-8"), logging.StreamHandler()):
            handler.setFormatter(fmt)
            logger.addHandler(handler)
        return logger

    def record(self, **fields: Any) -> None:
        """Merge `fields` into the run meta and rewrite run_meta.json."""
        self.meta.update(fields)
        self._dump(META_FILE, self.meta)

    def finish(self, exit_code: int, snapshot: Dict[str, Any]) -> Path:
        path = self._dump(SNAPSHOT_FILE, snapshot)
        self.record(ended_at_ms=int(time.time() * 1000), exit_code=int(exit_code))
        return path

    def _dump(self, name: str, payload: Dict[str, Any]) -> Path:
        path = self.root / name
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path
