import pytest
from unittest.mock import AsyncMock, Mock

from cortex import Cortex
from fakes import ScriptedProvider
from scout import ScoutAgent, ScoutResult
from storage import MomentumStore


@pytest.fixture
def store(tmp_path):
    return MomentumStore(tmp_path / "momentum.db")


@pytest.fixture
def embedder():
    return ScriptedProvider()


@pytest.fixture
def cortex(store, embedder):
    return Cortex(store, embedder, window=50)


@pytest.fixture
def scout():
    """ScoutAgent sin red: cada operación es un AsyncMock."""
    agent = Mock(spec=ScoutAgent)
    agent.get_pushed_at = AsyncMock()
    agent.get_readme = AsyncMock(return_value=ScoutResult(success=True, data="# Demo\nA demo project."))
    agent.list_contents = AsyncMock(return_value=ScoutResult(success=True, data=[]))
    agent.download_file_content = AsyncMock(return_value=ScoutResult(success=True, data=""))
    agent.create_issue = AsyncMock(return_value="https://github.com/acme/widgets/issues/1")
    return agent
