"""
HQ Client
=========

HTTP calls from the ship to the central control plane (HQ).

  GET  {hq}/api/ship                            liveness probe
  POST {hq}/api/ship/{shipId}/heartbeat         check in, receive pending deployments
  PUT  {hq}/api/ship/deployment/{id}/status     report deployment progress

Heartbeat and status updates run under the HTTP resilience policy. A non-2xx
answer raises ``HqRequestError`` so the policy retries it. The probe is a
cheap pre-check and never raises.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import requests

from .errors import HqRequestError
from .models import (
    Deployment,
    DeploymentStatus,
    HeartbeatRequest,
    HeartbeatResponse,
    StatusUpdate,
)
from .resilience import ResilientOperation

log = logging.getLogger(__name__)


class ControlPlaneClient:
    def __init__(
        self,
        hq_api_url:     str,
        ship_id:        str,
        http_operation: ResilientOperation,
        api_token:      Optional[str] = None,
        session:        Optional[requests.Session] = None,
        probe_timeout:  float = 10.0,
    ):
        self.hq_api_url     = hq_api_url.rstrip("/")
        self.ship_id        = ship_id
        self.http_operation = http_operation
        self.api_token      = api_token
        self.probe_timeout  = probe_timeout

        self._owns_session = session is None
        self.session       = session or requests.Session()

    # ─── Headers ──────────────────────────────────────────────────────────────

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-Ship-Id":    self.ship_id,
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    # ─── Connectivity ─────────────────────────────────────────────────────────

    def probe_connectivity(self) -> bool:
        """True when HQ answers the liveness endpoint with a 2xx."""
        try:
            resp = self.session.get(
                f"{self.hq_api_url}/api/ship",
                headers = self._headers(),
                timeout = self.probe_timeout,
            )
            return resp.ok
        except Exception as e:
            log.debug(f"HQ connectivity probe failed: {e}")
            return False

    # ─── Heartbeat ────────────────────────────────────────────────────────────

    def send_heartbeat(
        self,
        current_version: Optional[str],
        cancel:          Optional[threading.Event] = None,
    ) -> list[Deployment]:
        """
        Check in with HQ and return its pending deployments, in the order HQ
        listed them. An empty list means there is nothing to do.
        """
        url     = f"{self.hq_api_url}/api/ship/{self.ship_id}/heartbeat"
        payload = HeartbeatRequest(
            ship_id         = self.ship_id,
            current_version = current_version or "unknown",
        ).to_payload()

        def post(token: threading.Event) -> list[Deployment]:
            resp = self.session.post(
                url,
                json    = payload,
                headers = self._headers(),
                timeout = self.http_operation.policy.timeout,
            )
            if not resp.ok:
                raise HqRequestError("POST", url, resp.status_code, resp.text)

            result = HeartbeatResponse.from_dict(resp.json())
            if result.message:
                log.debug(f"HQ says: {result.message}")
            return result.pending_deployments

        deployments = self.http_operation.execute(post, cancel)
        if deployments:
            log.info(f"Found {len(deployments)} pending deployment(s)")
        return deployments

    # ─── Status ───────────────────────────────────────────────────────────────

    def update_deployment_status(
        self,
        deployment_id: str,
        status:        DeploymentStatus,
        error_message: Optional[str] = None,
        cancel:        Optional[threading.Event] = None,
    ) -> None:
        """
        Report ``status`` for a deployment. Raises once the HTTP policy gives
        up; callers decide whether that matters.
        """
        url     = f"{self.hq_api_url}/api/ship/deployment/{deployment_id}/status"
        payload = StatusUpdate(status=status, error_message=error_message).to_payload()

        def put(token: threading.Event) -> None:
            resp = self.session.put(
                url,
                json    = payload,
                headers = self._headers(),
                timeout = self.http_operation.policy.timeout,
            )
            if not resp.ok:
                raise HqRequestError("PUT", url, resp.status_code, resp.text)

        self.http_operation.execute(put, cancel)
        log.info(f"Deployment {deployment_id} → {status.value}")

    def close(self) -> None:
        if self._owns_session:
            self.session.close()
