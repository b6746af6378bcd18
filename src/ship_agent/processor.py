"""
Deployment Processor
====================

Takes one deployment from HQ to a terminal status:

  pull image → report Downloaded → stop old container → start new container
    → settle → verify → report Deployed | Failed

Failure handling:
  - pull or create/start failure   → Failed, with the error's message
  - stop/remove failure            → logged by the container manager, ignored
  - container not running at check → Failed, "Container failed to start"
  - a status report that fails     → logged; HQ catches up on a later heartbeat

``process`` always returns; nothing escapes to the agent loop.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .containers import ContainerLifecycleManager
from .hq_client import ControlPlaneClient
from .models import Deployment, DeploymentStatus

log = logging.getLogger(__name__)

NOT_RUNNING_MESSAGE = "Container failed to start"


class DeploymentProcessor:
    def __init__(
        self,
        hq:             ControlPlaneClient,
        containers:     ContainerLifecycleManager,
        settle_seconds: float = 10.0,
        sleep:          Callable[[float], None] = time.sleep,
    ):
        self.hq             = hq
        self.containers     = containers
        self.settle_seconds = settle_seconds
        self._sleep         = sleep

    def process(
        self,
        deployment: Deployment,
        cancel:     Optional[threading.Event] = None,
    ) -> DeploymentStatus:
        """Run ``deployment`` end to end and return the status reported for it."""
        log.info(f"Processing deployment {deployment.id} - {deployment.full_image_path}")

        try:
            # 1. Image first: nothing is touched if the pull fails
            self.containers.pull_image(deployment.full_image_path, cancel)

            # 2. Best-effort progress report
            self._report(deployment, DeploymentStatus.DOWNLOADED)

            # 3. Clear the slot (never raises)
            self.containers.stop_and_remove()

            # 4. New container
            self.containers.create_and_start(deployment)

            # 5. Fixed settle interval before checking; a stop request cuts it short
            if cancel is not None:
                cancel.wait(self.settle_seconds)
            else:
                self._sleep(self.settle_seconds)

            # 6. Verify
            if self.containers.is_running():
                self._report(deployment, DeploymentStatus.DEPLOYED)
                log.info(f"Deployment {deployment.id} completed successfully")
                return DeploymentStatus.DEPLOYED

            log.error(f"Deployment {deployment.id} failed - container not running")
            self._report(deployment, DeploymentStatus.FAILED, NOT_RUNNING_MESSAGE)
            return DeploymentStatus.FAILED

        except Exception as e:
            log.error(f"Deployment {deployment.id} failed: {e}", exc_info=True)
            self._report(deployment, DeploymentStatus.FAILED, str(e) or type(e).__name__)
            return DeploymentStatus.FAILED

    def _report(
        self,
        deployment:    Deployment,
        status:        DeploymentStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        # Not tied to the stop event: a shutdown mid-deployment still reports.
        try:
            self.hq.update_deployment_status(deployment.id, status, error_message)
            return True
        except Exception as e:
            log.error(
                f"Failed to report {status.value} for deployment {deployment.id}: {e} "
                f"(HQ view stays stale until the next successful heartbeat)"
            )
            return False
