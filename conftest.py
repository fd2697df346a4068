import pytest

from osquery_runner import BinaryNotFound


class FakeRunner:
    """Stands in for OsqueryRunner: answers queries from a table of canned results.

    A result may be a list of JSON values or a QueryError instance to raise.
    Unknown queries return an empty list.
    """

    def __init__(self, results=None, default=None):
        self.results = dict(results or {})
        self.default = default
        self.calls = []

    def run(self, query):
        self.calls.append(query)
        result = self.results.get(query, self.default)
        if isinstance(result, Exception):
            raise result
        return list(result or [])


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def absent_binary_runner():
    return FakeRunner(default=BinaryNotFound("osqueryi", "No such file or directory"))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    monkeypatch.delenv("HOST_SNAPSHOT_OSQUERYI", raising=False)
    monkeypatch.delenv("AGENT_INTERVAL", raising=False)
    monkeypatch.delenv("AGENT_LOG_LEVEL", raising=False)
    monkeypatch.setenv("HOST_SNAPSHOT_CACHE_DIR", str(tmp_path / "cache"))
