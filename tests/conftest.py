"""Shared fixtures: settings bound to a temp workspace and a live local sandbox."""

import pytest
import pytest_asyncio

from kiln.config import Settings
from kiln.sandbox.local import LocalSandbox


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def settings(workspace):
    """Settings with short timeouts and no provider backoff delay."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        workspace_dir=str(workspace),
        tool_timeout=5.0,
        sandbox_grace_period=0.2,
        provider_backoff_base=0.0,
    )


@pytest_asyncio.fixture
async def sandbox(workspace):
    """Started LocalSandbox over the temp workspace; closed after the test."""
    sb = LocalSandbox(str(workspace), default_timeout=30.0, grace_period=0.2)
    await sb.start()
    yield sb
    await sb.close()
