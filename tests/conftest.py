"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from doctools_backend.config import Settings
from doctools_backend.errors import ToolExecutionError
from doctools_backend.tools import Tool, ToolContext, ToolExecutor, default_tools
from server import create_app


async def concat_inputs(ctx: ToolContext) -> Path:
    """Stand-in for a merge: output is the inputs joined in the order received."""
    out = ctx.output("merged.pdf")
    with out.open("wb") as fh:
        for path in ctx.inputs:
            fh.write(path.read_bytes())
    return out


async def explode(ctx: ToolContext) -> Path:
    raise RuntimeError("unexpected bug in tool")


async def fail_with_path(ctx: ToolContext) -> Path:
    raise ToolExecutionError(f"could not read {ctx.inputs[0]}")


async def partial_then_fail(ctx: ToolContext) -> Path:
    ctx.output("page-1.pdf").write_bytes(b"half done")
    raise ToolExecutionError("second page failed")


class Gate:
    """Holds a fake job open until the test releases it (thread-safe)."""

    def __init__(self) -> None:
        self.event = threading.Event()
        self.calls = 0

    async def run(self, ctx: ToolContext) -> Path:
        self.calls += 1
        while not self.event.is_set():
            await asyncio.sleep(0.01)
        return await concat_inputs(ctx)


@pytest.fixture()
def gate() -> Gate:
    g = Gate()
    yield g
    g.event.set()


@pytest.fixture()
def executor(gate: Gate) -> ToolExecutor:
    tools = default_tools()
    tools["merge"] = Tool("merge", concat_inputs, "merged", ".pdf", min_files=2, max_files=None, accepts=frozenset({".pdf"}))
    tools["explode"] = Tool("explode", explode, "x", ".pdf", max_files=None)
    tools["fail"] = Tool("fail", fail_with_path, "x", ".pdf", max_files=None)
    tools["partial"] = Tool("partial", partial_then_fail, "x", ".pdf", max_files=None)
    tools["gate"] = Tool("gate", gate.run, "gated", ".pdf", max_files=None)
    return ToolExecutor(timeout_seconds=5.0, tools=tools)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        uploads_root=tmp_path / "uploads",
        max_upload_bytes=64 * 1024,
        session_timeout_seconds=3600,
        log_level="DEBUG",
    )


@pytest.fixture()
def client(settings: Settings, executor: ToolExecutor):
    app = create_app(settings, executor=executor)
    with TestClient(app) as test_client:
        yield test_client


def wait_for_terminal(client: TestClient, session_id: str, attempts: int = 250) -> dict:
    for _ in range(attempts):
        response = client.get(f"/session/status/{session_id}")
        assert response.status_code == 200
        body = response.json()
        if body["status"] in ("complete", "error"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"session {session_id} never reached a terminal state")


@pytest.fixture()
def poll(client: TestClient):
    return lambda session_id: wait_for_terminal(client, session_id)
