import pytest
import requests

from companion_chat.config import ChatConfig, ConfigError, GenerationConfig
from companion_chat.llm_client import GenerationClient, GenerationParams, first_line


class FakeResponse:
    def __init__(self, payload, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


def _client_returning(monkeypatch, payload, status_code=200, **config):
    client = GenerationClient(GenerationConfig(api_key="secret", request_timeout=60, **config))
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return FakeResponse(payload, status_code)

    monkeypatch.setattr(client.session, "post", fake_post)
    return client, calls


def test_first_line_keeps_only_reply():
    assert first_line("Hello there\nI am rambling more") == "Hello there"
    assert first_line("  padded  \n") == "padded"
    assert first_line("") == ""
    assert first_line("\nafter blank") == ""


def test_generate_sends_prompt_and_sampling_params(monkeypatch):
    client, calls = _client_returning(monkeypatch, {"choices": [{"text": "Hi!"}]}, model="llama")
    params = GenerationParams(temperature=0.5, max_tokens=64, top_p=0.9, presence_penalty=1.0)

    assert client.generate("Say hi", params) == "Hi!"

    sent = calls[0]
    assert sent["json"]["prompt"] == "Say hi"
    assert sent["json"]["model"] == "llama"
    assert sent["json"]["temperature"] == 0.5
    assert sent["json"]["max_tokens"] == 64
    assert sent["json"]["top_p"] == 0.9
    assert sent["json"]["presence_penalty"] == 1.0
    assert sent["headers"]["Authorization"] == "Bearer secret"


def test_default_params_come_from_config(monkeypatch):
    client, calls = _client_returning(monkeypatch, {"choices": [{"text": "ok"}]})
    client.generate("prompt")
    sent = calls[0]["json"]
    assert sent["temperature"] == 0.98
    assert sent["max_tokens"] == 512
    assert sent["top_p"] == 0.95
    assert sent["presence_penalty"] == 1.8


def test_deadline_caps_http_timeout(monkeypatch):
    client, calls = _client_returning(monkeypatch, {"choices": [{"text": "ok"}]})
    client.generate("prompt", timeout=30.0)
    client.generate("prompt", timeout=120.0)
    assert [call["timeout"] for call in calls] == [30.0, 60]


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"choices": [{"message": {"content": "chat style"}}]}, "chat style"),
        ({"output": ["Hel", "lo"]}, "Hello"),
        ({"output": "plain"}, "plain"),
    ],
)
def test_alternative_payload_shapes(monkeypatch, payload, expected):
    client, _ = _client_returning(monkeypatch, payload)
    assert client.generate("prompt") == expected


def test_payload_without_text_is_an_error(monkeypatch):
    client, _ = _client_returning(monkeypatch, {"unexpected": True})
    with pytest.raises(ValueError):
        client.generate("prompt")


def test_http_errors_propagate(monkeypatch):
    client, _ = _client_returning(monkeypatch, {}, status_code=503)
    with pytest.raises(requests.HTTPError):
        client.generate("prompt")


def test_missing_api_key_fails_validation(monkeypatch):
    monkeypatch.delenv("GENERATION_API_KEY", raising=False)
    config = ChatConfig.from_env()
    with pytest.raises(ConfigError):
        config.validate()


def test_api_key_read_from_environment(monkeypatch):
    monkeypatch.setenv("GENERATION_API_KEY", "from-env")
    monkeypatch.setenv("GENERATION_MODEL", "env-model")
    config = ChatConfig.from_env()
    config.validate()
    assert config.generation.api_key == "from-env"
    assert config.generation.model == "env-model"
