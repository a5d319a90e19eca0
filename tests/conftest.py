import pytest

from lcagraph.observability import clear_trace_context


@pytest.fixture(autouse=True)
def _clean_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Keep ~/.lcagraph/configuration.json out of the tests."""
    monkeypatch.setattr("lcagraph.config.LCAGRAPH_CONFIG_FILE", tmp_path / "configuration.json")
