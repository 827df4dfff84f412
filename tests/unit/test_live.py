"""Tests for the live WebSocket channel.

Starlette's TestClient runs the app on its own event loop thread; the gate
that holds ``terraform apply`` is released through the client's portal.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import TERMINAL_EVENTS, FakeCloudFactory, FakeSourceHost, prebuilt_request
from infra_wizard.api import create_app
from infra_wizard.api.routers.live import UNKNOWN_WORKFLOW_CLOSE_CODE
from infra_wizard.core.config import WizardConfig
from infra_wizard.process.mock import MockRunner
from infra_wizard.workflows.engine import DeploymentOrchestrator


@pytest.fixture
def app(
    wizard_config: WizardConfig,
    mock_runner: MockRunner,
    cloud_factory: FakeCloudFactory,
    source_host: FakeSourceHost,
) -> FastAPI:
    orchestrator = DeploymentOrchestrator(
        wizard_config,
        runner=mock_runner,
        source_host=source_host,
        cloud_api_factory=cloud_factory,
    )
    return create_app(orchestrator=orchestrator, run_sweeper=False)


def _wait_for_call(runner: MockRunner, prefix: str, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not runner.find(prefix):
        if time.monotonic() > deadline:
            raise AssertionError(f"{prefix!r} was never called")
        time.sleep(0.01)


def _frames_until_terminal(ws: Any) -> list[dict[str, Any]]:
    frames: list[dict[str, Any]] = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] in TERMINAL_EVENTS:
            return frames


def test_unknown_workflow_closed_with_4404(app: FastAPI) -> None:
    with TestClient(app) as client:
        with client.websocket_connect("/ws/deployments/missing") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
    assert exc_info.value.code == UNKNOWN_WORKFLOW_CLOSE_CODE


def test_snapshot_frame_then_contiguous_live_events(app: FastAPI, mock_runner: MockRunner) -> None:
    gate = asyncio.Event()
    mock_runner.register("terraform apply", block=gate)

    with TestClient(app) as client:
        workflow_id = client.post("/api/deployments", json=prebuilt_request()).json()["workflowId"]
        _wait_for_call(mock_runner, "terraform apply")

        with client.websocket_connect(f"/ws/deployments/{workflow_id}?snapshot=true") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["workflowId"] == workflow_id
            assert snapshot["data"]["status"] == "running"
            running = [s["id"] for s in snapshot["data"]["steps"] if s["status"] == "running"]
            assert running == ["terraform-apply"]

            client.portal.call(gate.set)
            frames = _frames_until_terminal(ws)

    live = [f for f in frames if f["sequence"] > snapshot["sequence"]]
    assert [f["sequence"] for f in live] == list(
        range(snapshot["sequence"] + 1, snapshot["sequence"] + 1 + len(live))
    )
    assert live[-1]["type"] == "deployment-completed"
    assert live[-1]["data"]["outputs"]["deploymentUrl"] == "https://shop.example.com"
    assert all(f["workflowId"] == workflow_id for f in frames)


def test_two_clients_receive_identical_streams(app: FastAPI, mock_runner: MockRunner) -> None:
    gate = asyncio.Event()
    mock_runner.register("terraform apply", block=gate)

    with TestClient(app) as client:
        workflow_id = client.post("/api/deployments", json=prebuilt_request()).json()["workflowId"]
        _wait_for_call(mock_runner, "terraform apply")
        url = f"/ws/deployments/{workflow_id}?snapshot=true"

        with client.websocket_connect(url) as first, client.websocket_connect(url) as second:
            snap_a = first.receive_json()
            snap_b = second.receive_json()
            assert snap_a["sequence"] == snap_b["sequence"]

            client.portal.call(gate.set)
            frames_a = _frames_until_terminal(first)
            frames_b = _frames_until_terminal(second)

    assert frames_a == frames_b
    assert [f["type"] for f in frames_a].count("step-update") >= 2
