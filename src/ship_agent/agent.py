"""
Ship Agent — Main Daemon
========================

The entry point for the ship-side daemon.

Every cycle:
  1. Probe HQ (GET /api/ship). Unreachable → skip the cycle entirely
  2. Heartbeat with the current version, receive pending deployments
  3. Process each deployment in the order HQ sent them, one at a time
  4. Sleep 5 minutes (1 minute after an unexpected error) and go again

Safe shutdown:
  SIGTERM / SIGINT → stop event set → current step finishes → loop exits
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path
from typing import Optional, Sequence

from .config import AgentConfig
from .containers import ContainerLifecycleManager, ContainerSettings
from .errors import ShipAgentError
from .hq_client import ControlPlaneClient
from .processor import DeploymentProcessor
from .resilience import ResilientOperation

log = logging.getLogger(__name__)

# ─── Logging ──────────────────────────────────────────────────────────────────

LOG_FORMAT  = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level   = getattr(logging, str(level).upper(), logging.INFO),
        format  = LOG_FORMAT,
        datefmt = LOG_DATEFMT,
    )
    # urllib3 is chatty at DEBUG and would drown the pull progress lines
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ─── Ship Agent ───────────────────────────────────────────────────────────────

class ShipAgent:
    def __init__(
        self,
        config:     AgentConfig,
        hq:         ControlPlaneClient,
        containers: ContainerLifecycleManager,
        processor:  DeploymentProcessor,
        stop_event: Optional[threading.Event] = None,
    ):
        self.config     = config
        self.hq         = hq
        self.containers = containers
        self.processor  = processor
        self._stop      = stop_event or threading.Event()

        self.current_version = containers.current_version() or "unknown"

    @classmethod
    def from_config(cls, config: AgentConfig) -> ShipAgent:
        """Production wiring: real Docker client, real HTTP session."""
        http_operation = ResilientOperation("hq-http", config.http_retry)
        pull_operation = ResilientOperation("image-pull", config.pull_retry)

        hq = ControlPlaneClient(
            hq_api_url     = config.hq_api_url,
            ship_id        = config.ship_id,
            http_operation = http_operation,
            api_token      = config.hq_api_token,
        )
        containers = ContainerLifecycleManager(
            settings       = ContainerSettings.from_config(config),
            pull_operation = pull_operation,
        )
        processor = DeploymentProcessor(
            hq             = hq,
            containers     = containers,
            settle_seconds = config.settle_seconds,
        )
        return cls(config, hq, containers, processor)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # ─── Cycle ────────────────────────────────────────────────────────────────

    def run_cycle(self):
        if not self.hq.probe_connectivity():
            log.info("No connection to HQ, skipping update check")
            return

        self.current_version = self.containers.current_version() or "unknown"

        try:
            deployments = self.hq.send_heartbeat(self.current_version, self._stop)
        except Exception as e:
            log.error(f"Error sending heartbeat: {e}", exc_info=True)
            return

        for deployment in deployments:
            if self.stopping:
                log.info("Shutdown requested - leaving remaining deployments for next start")
                break
            self.processor.process(deployment, self._stop)

        if deployments:
            self.current_version = self.containers.current_version() or "unknown"

    # ─── Main Loop ────────────────────────────────────────────────────────────

    def run(self):
        log.info(f"Ship Deployment Agent started for ship: {self.config.ship_id}")
        log.info(f"HQ:        {self.config.hq_api_url}")
        log.info(f"Container: {self.config.container_name} (version {self.current_version})")

        while not self.stopping:
            wait = self.config.poll_interval
            try:
                self.run_cycle()
            except Exception as e:
                log.error(f"Error in main service loop: {e}", exc_info=True)
                wait = self.config.error_interval

            self._stop.wait(wait)

        self.hq.close()
        log.info("Agent exited cleanly.")

    def stop(self):
        self._stop.set()


# ─── Entry Point ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ship Deployment Agent")
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to JSON config file (default: ~/.ship-agent/config.json)")
    parser.add_argument("--ship-id", dest="ship_id", default=None,
                        help="Ship identifier (default: host name)")
    parser.add_argument("--hq-url", dest="hq_api_url", default=None,
                        help="HQ base URL")
    parser.add_argument("--container-name", dest="container_name", default=None,
                        help="Name of the managed application container")
    parser.add_argument("--poll", dest="poll_interval", type=float, default=None,
                        help="Seconds between cycles (default: 300)")
    parser.add_argument("--log-level", dest="log_level", default=None,
                        help="DEBUG, INFO, WARNING, ... (default: INFO)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k != "config"}

    try:
        config = AgentConfig.load(path=args.config, overrides=overrides)
    except ShipAgentError as e:
        configure_logging()
        log.error(str(e))
        return 2

    configure_logging(config.log_level)
    log.debug(f"Configuration: {config.redacted()}")

    try:
        agent = ShipAgent.from_config(config)
    except ShipAgentError as e:
        log.error(str(e))
        return 1

    signal.signal(signal.SIGTERM, lambda s, f: agent.stop())
    signal.signal(signal.SIGINT,  lambda s, f: agent.stop())

    agent.run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
