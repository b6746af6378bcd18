"""
Models
======

Value objects exchanged with HQ.

HQ is case-insensitive about property names (it serialises PascalCase, some
proxies rewrite to camelCase), so everything read from the wire goes through
``_normalise_keys`` before lookup. Outgoing payloads use the PascalCase names
HQ documents.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

log = logging.getLogger(__name__)


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _normalise_keys(raw: dict) -> dict:
    """Lower-case keys and drop underscores: ``FullImagePath`` == ``full_image_path``."""
    return {str(k).replace("_", "").lower(): v for k, v in raw.items()}


def image_tag(ref: Optional[str]) -> Optional[str]:
    """
    Return the tag segment of an image reference, or None.

    >>> image_tag("registry.local:5000/team/app:1.4.2")
    '1.4.2'
    >>> image_tag("registry.local:5000/team/app") is None
    True
    """
    if not ref or "@" in ref:
        return None
    last = ref.rsplit("/", 1)[-1]
    if ":" not in last:
        return None
    return last.rsplit(":", 1)[1] or None


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ─── Deployment Status ────────────────────────────────────────────────────────

class DeploymentStatus(str, Enum):
    """
    Lifecycle of a deployment as HQ sees it.

    ``PENDING`` is HQ's own state; the agent only ever reports
    ``DOWNLOADED``, ``DEPLOYED`` or ``FAILED``.
    """

    PENDING    = "Pending"
    DOWNLOADED = "Downloaded"
    DEPLOYED   = "Deployed"
    FAILED     = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED)


# ─── Deployment ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Deployment:
    """
    One request from HQ to run a specific image with specific settings.
    Immutable once received; never persisted locally.
    """
    id:              str
    ship_id:         str
    image_name:      str
    image_tag:       str
    full_image_path: str                  # Registry-qualified reference used for pull/run
    settings:        dict[str, str] = field(default_factory=dict)  # Injected as env vars

    @property
    def version(self) -> str:
        return self.image_tag or image_tag(self.full_image_path) or "latest"

    @classmethod
    def from_dict(cls, raw: dict) -> Deployment:
        data = _normalise_keys(raw)

        deployment_id = str(data.get("id") or "").strip()
        if not deployment_id:
            raise ValueError(f"Deployment record has no id: {raw!r}")

        image_name = str(data.get("imagename") or "")
        tag        = str(data.get("imagetag") or "")
        full_path  = str(data.get("fullimagepath") or "")
        if not full_path:
            if not image_name:
                raise ValueError(f"Deployment {deployment_id} has no image reference")
            full_path = f"{image_name}:{tag or 'latest'}"

        settings = data.get("settings") or {}
        if not isinstance(settings, dict):
            raise ValueError(f"Deployment {deployment_id} settings must be an object")

        return cls(
            id              = deployment_id,
            ship_id         = str(data.get("shipid") or ""),
            image_name      = image_name,
            image_tag       = tag,
            full_image_path = full_path,
            settings        = {str(k): "" if v is None else str(v) for k, v in settings.items()},
        )


# ─── Heartbeat ────────────────────────────────────────────────────────────────

@dataclass
class HeartbeatRequest:
    ship_id:         str
    current_version: str
    timestamp:       str = field(default_factory=utc_timestamp)

    def to_payload(self) -> dict:
        return {
            "ShipId":         self.ship_id,
            "CurrentVersion": self.current_version,
            "Timestamp":      self.timestamp,
        }


@dataclass
class HeartbeatResponse:
    message:             str = ""
    pending_deployments: list[Deployment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> HeartbeatResponse:
        """
        Parse HQ's heartbeat answer. The order of pending deployments is kept:
        it is the order in which they get processed.

        A malformed deployment entry is skipped (and logged) rather than
        failing the whole heartbeat, so one bad record cannot block the rest.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"Heartbeat response must be a JSON object, got {type(raw).__name__}")

        data    = _normalise_keys(raw)
        entries = data.get("pendingdeployments") or []
        if not isinstance(entries, list):
            raise ValueError("Heartbeat response 'PendingDeployments' must be a list")

        deployments = []
        for entry in entries:
            if not isinstance(entry, dict):
                log.warning(f"Skipping non-object deployment entry: {entry!r}")
                continue
            try:
                deployments.append(Deployment.from_dict(entry))
            except ValueError as e:
                log.warning(f"Skipping malformed deployment entry: {e}")

        return cls(message=str(data.get("message") or ""), pending_deployments=deployments)


# ─── Status Update ────────────────────────────────────────────────────────────

@dataclass
class StatusUpdate:
    status:        DeploymentStatus
    error_message: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "Status":       self.status.value,
            "ErrorMessage": self.error_message,
        }
