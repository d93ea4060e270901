import asyncio
import json

import httpx
import pytest

import core.llm_adapter as llm_adapter
from core.exceptions import ConfigError
from core.llm_adapter import (
    OllamaAdapter,
    RuleBasedAdapter,
    TextRequest,
    create_llm_adapter,
    generate_text,
    generate_text_async,
    get_llm,
    load_model_config,
    reset_llm,
)


def _ollama(handler):
    return OllamaAdapter(
        {"provider": "ollama", "base_url": "http://ollama.test", "model_name": "llama3.2"},
        transport=httpx.MockTransport(handler),
    )


def test_ollama_text_is_compacted():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": " Hello \n\n world "})

    text = generate_text(TextRequest(prompt="hi", num_predict=42), timeout=1.0, adapter=_ollama(handler))

    assert text == "Hello world"
    assert seen["path"] == "/api/generate"
    assert seen["body"]["model"] == "llama3.2"
    assert seen["body"]["stream"] is False
    assert seen["body"]["options"]["num_predict"] == 42


def test_long_text_is_truncated():
    adapter = _ollama(lambda request: httpx.Response(200, json={"response": "x" * 50}))
    text = generate_text(TextRequest(prompt="hi", max_len=10), timeout=1.0, adapter=adapter)
    assert text == "x" * 9 + "…"


def _refused(request):
    raise httpx.ConnectError("refused", request=request)


def _slow(request):
    raise httpx.ReadTimeout("slow", request=request)


@pytest.mark.parametrize("failure", [
    _refused,
    _slow,
    lambda request: httpx.Response(500, json={"error": "boom"}),
    lambda request: httpx.Response(200, json={"done": True}),
    lambda request: httpx.Response(200, content=b"not json"),
])
def test_failures_yield_no_text(failure):
    assert generate_text(TextRequest(prompt="hi"), timeout=1.0, adapter=_ollama(failure)) is None


def test_empty_prompt_skips_the_call():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"response": "unused"})

    assert generate_text(TextRequest(prompt="   "), timeout=1.0, adapter=_ollama(handler)) is None
    assert calls == []


def test_rule_based_adapter_yields_no_text():
    adapter = RuleBasedAdapter({})
    assert asyncio.run(generate_text_async(TextRequest(prompt="hi"), 1.0, adapter=adapter)) is None


def _write_config(tmp_path, monkeypatch, text):
    path = tmp_path / "model.yaml"
    path.write_text(text, encoding="utf-8")
    monkeypatch.setattr(llm_adapter, "MODEL_CONFIG_PATH", path)
    monkeypatch.setattr(llm_adapter, "LOCAL_MODEL_CONFIG_PATH", tmp_path / "local_model.yaml")
    return path


def test_load_model_config_profiles(tmp_path, monkeypatch):
    _write_config(tmp_path, monkeypatch, (
        "active_profile: local\n"
        "profiles:\n"
        "  local:\n"
        "    provider: ollama\n"
        "    base_url: http://localhost:11434\n"
        "  remote:\n"
        "    provider: ollama\n"
        "    base_url: ${TEST_OLLAMA_URL}\n"
    ))
    monkeypatch.delenv("FINISH_OS_LLM_PROFILE", raising=False)
    monkeypatch.setenv("TEST_OLLAMA_URL", "http://gpu-box:11434")

    assert load_model_config()["base_url"] == "http://localhost:11434"
    assert load_model_config("remote")["base_url"] == "http://gpu-box:11434"
    assert load_model_config("missing") == {"provider": "rule_based"}

    monkeypatch.setenv("FINISH_OS_LLM_PROFILE", "remote")
    assert load_model_config()["base_url"] == "http://gpu-box:11434"


def test_unset_env_var_is_config_error(tmp_path, monkeypatch):
    _write_config(tmp_path, monkeypatch, "provider: ollama\nbase_url: ${TEST_UNSET_URL}\n")
    monkeypatch.delenv("TEST_UNSET_URL", raising=False)

    with pytest.raises(ConfigError):
        load_model_config()


def test_missing_config_file_falls_back(tmp_path, monkeypatch):
    monkeypatch.setattr(llm_adapter, "MODEL_CONFIG_PATH", tmp_path / "nope.yaml")
    monkeypatch.setattr(llm_adapter, "LOCAL_MODEL_CONFIG_PATH", tmp_path / "nope_local.yaml")
    assert load_model_config() == {"provider": "rule_based"}


def test_create_adapter_by_provider():
    assert isinstance(create_llm_adapter({"provider": "Ollama"}), OllamaAdapter)
    assert isinstance(create_llm_adapter({"provider": "rule_based"}), RuleBasedAdapter)
    with pytest.raises(ConfigError):
        create_llm_adapter({"provider": "telepathy"})


def test_get_llm_caches_configured_adapter():
    reset_llm()
    try:
        first = get_llm()
        assert isinstance(first, RuleBasedAdapter)
        assert get_llm() is first
    finally:
        reset_llm()


class ExplodingAdapter(RuleBasedAdapter):
    def generate(self, request, timeout):
        raise KeyError("response")


def test_unexpected_adapter_error_yields_no_text():
    assert generate_text(TextRequest(prompt="hi"), timeout=1.0, adapter=ExplodingAdapter({})) is None
    assert asyncio.run(generate_text_async(TextRequest(prompt="hi"), 1.0, adapter=ExplodingAdapter({}))) is None
