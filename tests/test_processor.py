"""Unit tests for the deployment state machine."""

from __future__ import annotations

import threading
import time
from typing import Callable
from unittest.mock import MagicMock, Mock, call

import pytest
import requests

from ship_agent.errors import ContainerStartError, HqRequestError, ImagePullError
from ship_agent.models import Deployment, DeploymentStatus
from ship_agent.processor import NOT_RUNNING_MESSAGE, DeploymentProcessor

DOWNLOADED = DeploymentStatus.DOWNLOADED
DEPLOYED   = DeploymentStatus.DEPLOYED
FAILED     = DeploymentStatus.FAILED


@pytest.fixture
def parent() -> MagicMock:
    """Common parent so call order across hq and containers can be asserted."""
    return MagicMock()


@pytest.fixture
def hq(parent: MagicMock) -> MagicMock:
    return parent.hq


@pytest.fixture
def containers(parent: MagicMock) -> MagicMock:
    containers = parent.containers
    containers.is_running.return_value = True
    return containers


@pytest.fixture
def sleep() -> Mock:
    return Mock()


@pytest.fixture
def processor(hq: MagicMock, containers: MagicMock, sleep: Mock) -> DeploymentProcessor:
    return DeploymentProcessor(hq, containers, settle_seconds=10.0, sleep=sleep)


def reported(hq: MagicMock) -> list:
    return hq.update_deployment_status.call_args_list


class TestHappyPath:
    """Tests for a deployment that goes through."""

    def test_deployed(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        sleep: Mock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """Pull succeeds and the container runs: Downloaded then Deployed."""
        assert processor.process(make_deployment()) == DEPLOYED

        assert reported(hq) == [call("d1", DOWNLOADED, None), call("d1", DEPLOYED, None)]
        sleep.assert_called_once_with(10.0)

    def test_step_order(
        self,
        processor: DeploymentProcessor,
        parent: MagicMock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """pull → Downloaded → stop → start → verify → Deployed."""
        deployment = make_deployment()

        processor.process(deployment)

        steps = [name for name, _, _ in parent.mock_calls]
        assert steps == [
            "containers.pull_image",
            "hq.update_deployment_status",
            "containers.stop_and_remove",
            "containers.create_and_start",
            "containers.is_running",
            "hq.update_deployment_status",
        ]
        assert parent.mock_calls[0] == call.containers.pull_image(
            "registry.local/app:1.2.0", None
        )
        assert parent.mock_calls[3] == call.containers.create_and_start(deployment)


class TestFailures:
    """Tests for each failure branch."""

    def test_not_running_after_settle(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        containers: MagicMock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """A container that is not running after the settle wait fails."""
        containers.is_running.return_value = False

        assert processor.process(make_deployment()) == FAILED
        assert reported(hq)[-1] == call("d1", FAILED, NOT_RUNNING_MESSAGE)
        assert NOT_RUNNING_MESSAGE == "Container failed to start"

    def test_pull_failure_skips_container_work(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        containers: MagicMock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """No stop/start happens when the image cannot be pulled."""
        error = requests.ConnectionError("registry unreachable")
        containers.pull_image.side_effect = error

        assert processor.process(make_deployment()) == FAILED

        containers.stop_and_remove.assert_not_called()
        containers.create_and_start.assert_not_called()
        assert reported(hq) == [call("d1", FAILED, str(error))]

    def test_pull_stream_error_message_reported(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        containers: MagicMock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """The pull error's message is what HQ sees."""
        containers.pull_image.side_effect = ImagePullError("app:1", "manifest unknown")

        processor.process(make_deployment())

        assert reported(hq) == [call("d1", FAILED, "Failed to pull image app:1: manifest unknown")]

    def test_start_failure(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        containers: MagicMock,
        sleep: Mock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """A container that cannot start fails without the settle wait."""
        containers.create_and_start.side_effect = ContainerStartError("app", "port in use")

        assert processor.process(make_deployment()) == FAILED

        containers.is_running.assert_not_called()
        sleep.assert_not_called()
        assert reported(hq)[-1] == call(
            "d1", FAILED, "Container 'app' could not be started: port in use"
        )

    def test_empty_error_message_uses_type(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        containers: MagicMock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """An exception without a message reports its type name."""
        containers.create_and_start.side_effect = RuntimeError()

        processor.process(make_deployment())

        assert reported(hq)[-1] == call("d1", FAILED, "RuntimeError")


class TestStatusReportFailures:
    """Status report failures never break processing."""

    def test_downloaded_report_failure_continues(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        containers: MagicMock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """Losing the Downloaded report does not stop the deployment."""
        hq.update_deployment_status.side_effect = [HqRequestError("PUT", "u", 503), None]

        assert processor.process(make_deployment()) == DEPLOYED
        containers.create_and_start.assert_called_once()

    def test_deployed_report_failure_does_not_raise(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        make_deployment: Callable[..., Deployment],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A failed final report is logged; local processing still completes."""
        hq.update_deployment_status.side_effect = [None, HqRequestError("PUT", "u", 500)]

        assert processor.process(make_deployment()) == DEPLOYED
        assert len(reported(hq)) == 2
        assert any("Failed to report Deployed" in r.message for r in caplog.records)

    def test_failed_report_failure_does_not_raise(
        self,
        processor: DeploymentProcessor,
        hq: MagicMock,
        containers: MagicMock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """Failing to report a failure is logged and swallowed."""
        containers.pull_image.side_effect = ImagePullError("app:1", "denied")
        hq.update_deployment_status.side_effect = requests.ConnectionError("hq down")

        assert processor.process(make_deployment()) == FAILED


class TestSettleWait:
    """The settle wait follows the stop event when one is given."""

    def test_stop_event_ends_settle_early(
        self,
        hq: MagicMock,
        containers: MagicMock,
        sleep: Mock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """A set stop event skips the wait but the outcome is still verified and reported."""
        processor = DeploymentProcessor(hq, containers, settle_seconds=60.0, sleep=sleep)
        stop = threading.Event()
        stop.set()

        started = time.monotonic()
        assert processor.process(make_deployment(), stop) == DEPLOYED

        assert time.monotonic() - started < 5
        sleep.assert_not_called()
        containers.is_running.assert_called_once()
        assert reported(hq)[-1] == call("d1", DEPLOYED, None)

    def test_waits_on_stop_event(
        self,
        processor: DeploymentProcessor,
        sleep: Mock,
        make_deployment: Callable[..., Deployment],
    ) -> None:
        """With a stop event the settle interval is waited on that event."""
        stop = Mock(spec=threading.Event)

        processor.process(make_deployment(), stop)

        stop.wait.assert_called_once_with(10.0)
        sleep.assert_not_called()
