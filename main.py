import asyncio
import logging
import signal
import sys

import config
from artifacts import build_mutator
from clock import AsyncioClock
from diagnosis import build_oracle
from monitoring.health import HealthMonitor
from monitoring.probes import ApplicationProbe
from orchestrator import Orchestrator, load_orchestrator_config

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
config.LOG_DIR.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(config.LOG_DIR / "sparkheal.log"),
    ],
)
log = logging.getLogger("sparkheal")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------
def build_orchestrator() -> Orchestrator:
    orchestrator_config = load_orchestrator_config()
    monitor = HealthMonitor(ApplicationProbe())
    oracle = build_oracle(auto_fix_on_uncertainty=orchestrator_config.default_auto_fix_on_uncertainty)
    mutator = build_mutator()
    return Orchestrator(
        monitor,
        oracle,
        mutator,
        orchestrator_config,
        AsyncioClock(),
        report_dir=config.REPORT_DIR,
    )


class Service:
    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator
        self._stopped: asyncio.Event | None = None

    async def run(self):
        self._stopped = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda *_args: loop.call_soon_threadsafe(self.shutdown))

        log.info(
            "%s starting: probing %s, oracle=%s, artifacts=%s",
            config.SERVICE_NAME, config.APP_BASE_URL, config.ORACLE_BACKEND, config.ARTIFACT_BACKEND,
        )
        self.orchestrator.start()
        # first health sample right away instead of waiting a full interval
        await self.orchestrator.trigger_now("health_check")

        await self._stopped.wait()
        self.orchestrator.stop()
        log.info("%s shut down.", config.SERVICE_NAME)

    def shutdown(self, *_args):
        log.info("Shutdown signal received...")
        if self._stopped is not None:
            self._stopped.set()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    service = Service(build_orchestrator())
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        log.info("Interrupted.")


if __name__ == "__main__":
    main()
