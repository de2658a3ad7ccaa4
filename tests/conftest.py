"""
Shared fixtures for the evidence engine tests

VTID: VTID-01204
"""

import sys

import pytest

from vitana_evidence import EngineConfig, ExecutionEngine, PluginRegistry, SpecificationLoader

from helpers import FAKE_MCP_SERVER


@pytest.fixture
def workspace(tmp_path):
    """Workspace whose path contains whitespace"""
    root = tmp_path / "work space"
    root.mkdir()
    return root


@pytest.fixture
def loader():
    return SpecificationLoader(environ={})


@pytest.fixture
def registry():
    return PluginRegistry().load_all()


@pytest.fixture
def fake_server_command():
    return [sys.executable, str(FAKE_MCP_SERVER)]


@pytest.fixture
def make_engine():
    def _make(registry=None, **config):
        return ExecutionEngine(config=EngineConfig(**config), registry=registry)
    return _make
