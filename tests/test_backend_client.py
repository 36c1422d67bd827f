"""
Tests for BackendClient: payload shapes, retries and error mapping.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from chatkeep.clients.backend_client import (
    CHAT_PATH,
    GENERATE_IMAGE_PATH,
    SUMMARIZE_PATH,
    BackendClient,
)
from chatkeep.config.settings import Settings
from chatkeep.memory.errors import CollaboratorFailure


def _response(status=200, body=None, json_error=False):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    if json_error:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


@pytest.fixture
def http():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def client(http):
    settings = Settings(api_base="http://gateway.test/", http_timeout_seconds=5.0, http_max_retries=2)
    return BackendClient(settings=settings, session=http)


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("chatkeep.clients.backend_client._sleep_backoff") as sleep:
        yield sleep


class TestChat:
    def test_payload_and_reply(self, client, http):
        http.post.return_value = _response(body={"reply": "hi there"})
        history = [{"role": "user", "content": "earlier"}]

        reply = client.chat("hello", history, context={"last_city": "Austin, TX"}, directives={"policy": {}})

        assert reply == "hi there"
        url = http.post.call_args.args[0]
        kwargs = http.post.call_args.kwargs
        assert url == "http://gateway.test" + CHAT_PATH
        assert kwargs["timeout"] == 5.0
        assert kwargs["json"]["input"] == "hello"
        assert kwargs["json"]["history"] == history
        assert kwargs["json"]["context"] == {"last_city": "Austin, TX"}
        assert kwargs["json"]["directives"] == {"policy": {}}

    def test_empty_directives_omitted(self, client, http):
        http.post.return_value = _response(body={"reply": "ok"})
        client.chat("hello", [])
        payload = http.post.call_args.kwargs["json"]
        assert "directives" not in payload
        assert "context" not in payload

    def test_missing_reply_is_failure(self, client, http):
        http.post.return_value = _response(body={"error": "model overloaded"})
        with pytest.raises(CollaboratorFailure, match="model overloaded"):
            client.chat("hello", [])

    def test_user_agent_set(self, http, client):
        assert "chatkeep" in http.headers["User-Agent"]


class TestRetries:
    def test_transient_status_retried_then_succeeds(self, client, http, no_backoff):
        http.post.side_effect = [
            _response(503, {"error": "busy"}),
            _response(body={"reply": "finally"}),
        ]
        assert client.chat("hello", []) == "finally"
        assert http.post.call_count == 2
        no_backoff.assert_called_once_with(1)

    def test_gives_up_after_max_attempts(self, client, http):
        http.post.return_value = _response(502, {"error": "bad gateway"})
        with pytest.raises(CollaboratorFailure) as excinfo:
            client.chat("hello", [])
        assert http.post.call_count == 3
        assert excinfo.value.status_code == 502

    def test_client_error_not_retried(self, client, http):
        http.post.return_value = _response(400, {"detail": "input too long"})
        with pytest.raises(CollaboratorFailure, match="input too long") as excinfo:
            client.chat("hello", [])
        assert http.post.call_count == 1
        assert excinfo.value.status_code == 400

    def test_network_errors_retried(self, client, http):
        http.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(CollaboratorFailure, match="network error"):
            client.chat("hello", [])
        assert http.post.call_count == 3

    def test_non_json_body(self, client, http):
        http.post.return_value = _response(200, json_error=True)
        with pytest.raises(CollaboratorFailure, match="not a JSON object"):
            client.chat("hello", [])


class TestSummarizeAndImages:
    def test_summarize_sends_purpose(self, client, http):
        http.post.return_value = _response(body={"summary": "short"})
        assert client.summarize("user: hi", purpose="conversation memory") == "short"
        assert http.post.call_args.args[0].endswith(SUMMARIZE_PATH)
        assert http.post.call_args.kwargs["json"] == {"text": "user: hi", "purpose": "conversation memory"}

    def test_summarize_without_summary(self, client, http):
        http.post.return_value = _response(body={"result": "x"})
        with pytest.raises(CollaboratorFailure):
            client.summarize("text")

    def test_generate_image(self, client, http):
        http.post.return_value = _response(body={"image_b64": "aGVsbG8="})
        assert client.generate_image("a cat", "512x512") == "aGVsbG8="
        assert http.post.call_args.args[0].endswith(GENERATE_IMAGE_PATH)
        assert http.post.call_args.kwargs["json"] == {"prompt": "a cat", "size": "512x512"}

    def test_generate_image_refusal(self, client, http):
        http.post.return_value = _response(200, {"error": "content policy"})
        with pytest.raises(CollaboratorFailure, match="content policy"):
            client.generate_image("something")
