from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from infra.ipc import IpcConnection  # noqa: E402
from ingestor import config  # noqa: E402
from ingestor.artifacts import RunArtifacts  # noqa: E402
from mempool.engine import IngestPipeline  # noqa: E402
from mempool.errors import MaxReconnectAttemptsExceeded, PublishError  # noqa: E402
from mempool.publisher import Publisher  # noqa: E402

EXIT_OK = 0
EXIT_PUBLISHER_UNAVAILABLE = 1
EXIT_RECONNECT_EXHAUSTED = 2


async def _run(artifacts: RunArtifacts) -> int:
    logger = artifacts.configure_logging()
    ipc_config = config.ipc_config_from_env()
    artifacts.record(ipc_path=ipc_config.socket_path, channel=config.redis_channel())

    try:
        publisher = await Publisher.connect(config.redis_url(), config.redis_channel())
    except PublishError as exc:
        logger.critical("Redis connection failed: %s", exc)
        artifacts.record(exit_code=EXIT_PUBLISHER_UNAVAILABLE)
        return EXIT_PUBLISHER_UNAVAILABLE

    pipeline = IngestPipeline(IpcConnection(ipc_config), publisher)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.stop)
        except NotImplementedError:
            pass

    exit_code = EXIT_OK
    try:
        logger.info("ingestor started: ipc=%s channel=%s", ipc_config.socket_path, publisher.channel)
        await pipeline.run()
    except MaxReconnectAttemptsExceeded as exc:
        logger.critical("giving up on IPC transport: %s", exc)
        exit_code = EXIT_RECONNECT_EXHAUSTED
    finally:
        await publisher.close()
        snapshot = pipeline.snapshot()
        path = artifacts.finish(exit_code, snapshot)
        logger.info("stats=%s snapshot=%s", snapshot["stats"], path)
    return exit_code


def main() -> int:
    artifacts = RunArtifacts.create(Path(config.run_log_dir()))
    return asyncio.run(_run(artifacts))


if __name__ == "__main__":
    raise SystemExit(main())
