"""Pytest configuration and shared fixtures for ship agent tests."""

from __future__ import annotations

from typing import Any, Callable
from unittest.mock import MagicMock

import pytest

from ship_agent.models import Deployment
from ship_agent.resilience import ResilientOperation, RetryPolicy


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Three attempts, no backoff, generous overall timeout."""
    return RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0, timeout=5.0)


@pytest.fixture
def fast_operation(fast_policy: RetryPolicy) -> ResilientOperation:
    return ResilientOperation("test-op", fast_policy)


@pytest.fixture
def make_deployment() -> Callable[..., Deployment]:
    """Factory for Deployment value objects with sensible defaults."""

    def _make(deployment_id: str = "d1", **overrides: Any) -> Deployment:
        fields: dict[str, Any] = {
            "id": deployment_id,
            "ship_id": "ship-1",
            "image_name": "registry.local/app",
            "image_tag": "1.2.0",
            "full_image_path": "registry.local/app:1.2.0",
            "settings": {},
        }
        fields.update(overrides)
        return Deployment(**fields)

    return _make


@pytest.fixture
def make_container() -> Callable[..., MagicMock]:
    """Factory for mock docker Container objects."""

    def _make(
        name: str = "app",
        status: str = "running",
        labels: dict[str, str] | None = None,
        image: str = "registry.local/app:1.0.0",
    ) -> MagicMock:
        container = MagicMock()
        container.name = name
        container.status = status
        container.short_id = "abc123"
        container.labels = labels or {}
        container.attrs = {"Config": {"Image": image}}
        return container

    return _make
