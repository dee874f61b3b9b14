#tests/test_worker_client.py

"""Control plane HTTP client error mapping."""

from uuid import uuid4

import pytest
import requests

from paas_engine.core.errors import (
    AuthenticationError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from worker_agent import client as client_module
from worker_agent.client import ControlPlaneClient


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text
        self.content = b"" if body is None and not text else b"x"

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


@pytest.fixture
def calls(monkeypatch):
    """Replaces requests.request; tests set calls.response or calls.error."""

    class Recorder:
        response = FakeResponse(200, {})
        error = None
        seen = []

    recorder = Recorder()
    recorder.seen = []

    def fake_request(method, url, **kwargs):
        recorder.seen.append((method, url, kwargs))
        if recorder.error:
            raise recorder.error
        return recorder.response

    monkeypatch.setattr(client_module.requests, "request", fake_request)
    return recorder


@pytest.fixture
def client():
    c = ControlPlaneClient("http://cp:8000/", timeout=3)
    c.set_credentials(uuid4(), "secret")
    return c


class TestRequests:

    def test_register_is_unauthenticated(self, calls):
        node_id = uuid4()
        calls.response = FakeResponse(200, {"node_id": str(node_id), "auth_token": "tok"})
        c = ControlPlaneClient("http://cp:8000")

        assert c.register_worker(name="n", region="r") == (node_id, "tok")
        method, url, kwargs = calls.seen[0]
        assert (method, url) == ("POST", "http://cp:8000/api/paas/worker/register")
        assert kwargs["headers"] == {}
        assert c.has_credentials()

    def test_auth_headers(self, calls, client):
        client.send_heartbeat({"cpu_total": 1000}, [])

        headers = calls.seen[0][2]["headers"]
        assert headers["Authorization"] == "Bearer secret"
        assert headers["X-Node-Id"] == str(client.node_id)
        assert calls.seen[0][2]["timeout"] == 3

    def test_unregistered_client_refuses_authenticated_calls(self, calls):
        with pytest.raises(AuthenticationError):
            ControlPlaneClient("http://cp:8000").get_queued_builds()
        assert calls.seen == []

    def test_empty_body(self, calls, client):
        calls.response = FakeResponse(204)
        assert client.update_build_status(uuid4(), "completed") == {}


class TestErrorMapping:

    @pytest.mark.parametrize(
        "status, error",
        [
            (401, AuthenticationError),
            (404, NotFoundError),
            (400, ValidationError),
            (422, ValidationError),
            (500, TransientInfrastructureError),
            (503, TransientInfrastructureError),
        ],
    )
    def test_status_codes(self, calls, client, status, error):
        calls.response = FakeResponse(status, {"detail": "nope"})

        with pytest.raises(error) as exc:
            client.send_heartbeat({}, [])
        assert "nope" in str(exc.value)

    def test_conflict_on_accept_means_taken(self, calls, client):
        calls.response = FakeResponse(409, {"detail": "Job already leased"})
        assert client.accept_build(uuid4()) is None

    def test_connection_error_is_transient(self, calls, client):
        calls.error = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransientInfrastructureError, match="Cannot connect"):
            client.get_queued_builds()

    def test_timeout_is_transient(self, calls, client):
        calls.error = requests.exceptions.Timeout("slow")
        with pytest.raises(TransientInfrastructureError, match="timeout"):
            client.get_queued_builds()

    def test_plain_text_error_body(self, calls, client):
        calls.response = FakeResponse(502, text="Bad Gateway")
        with pytest.raises(TransientInfrastructureError, match="Bad Gateway"):
            client.get_queued_builds()


class TestBestEffortLogs:

    def test_log_upload_failure_returns_false(self, calls, client):
        calls.error = requests.exceptions.ConnectionError("refused")
        assert client.add_build_log(uuid4(), ["line"]) is False

    def test_no_lines_no_request(self, calls, client):
        assert client.add_build_log(uuid4(), [])
        assert calls.seen == []


class TestHealth:

    def test_health(self, monkeypatch):
        monkeypatch.setattr(client_module.requests, "get", lambda url, timeout: FakeResponse(200, {}))
        assert ControlPlaneClient("http://cp:8000").health()

    def test_health_unreachable(self, monkeypatch):
        def refuse(url, timeout):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr(client_module.requests, "get", refuse)
        assert not ControlPlaneClient("http://cp:8000").health()
