import json

import pytest

from msgbridge.config import ModelMapping, ModelMappingRule, Settings, load_model_mapping


def test_rule_match_types():
    assert ModelMappingRule("claude-3", "t", "exact").matches("claude-3")
    assert not ModelMappingRule("claude-3", "t", "exact").matches("claude-3-opus")
    assert ModelMappingRule("claude-", "t", "prefix").matches("claude-3-opus")
    assert ModelMappingRule("-opus", "t", "suffix").matches("claude-3-opus")
    assert ModelMappingRule("sonnet", "t", "contains").matches("claude-3-sonnet-20240229")


def test_first_matching_rule_wins():
    mapping = ModelMapping(
        rules=(
            ModelMappingRule("claude-3-opus", "big", "prefix"),
            ModelMappingRule("claude", "small", "contains"),
        ),
        default_model="fallback",
    )
    assert mapping.resolve("claude-3-opus-20240229") == "big"
    assert mapping.resolve("claude-3-haiku") == "small"
    assert mapping.resolve("gpt-4o") == "fallback"


def test_passthrough_without_rules_or_default():
    assert ModelMapping().resolve("anything") == "anything"


def test_rule_format_from_inline_json():
    raw = json.dumps(
        {
            "mappings": [
                {"pattern": "haiku", "target": "qwen-turbo", "type": "contains"},
                {"pattern": "claude", "target": "qwen3-coder-plus", "type": "prefix"},
                {"pattern": "", "target": "ignored"},
            ],
            "defaultModel": "qwen-max",
        }
    )
    mapping = load_model_mapping(raw)
    assert mapping.patterns == ["haiku", "claude"]
    assert mapping.resolve("claude-3-haiku") == "qwen-turbo"
    assert mapping.resolve("claude-3-opus") == "qwen3-coder-plus"
    assert mapping.resolve("other") == "qwen-max"


def test_legacy_format_is_exact_match():
    mapping = ModelMapping.from_obj(
        {"claude-3-opus": "gpt-4o", "claude-3-haiku": {"openaiModel": "gpt-4o-mini"}, "bad": 3}
    )
    assert mapping.resolve("claude-3-opus") == "gpt-4o"
    assert mapping.resolve("claude-3-haiku") == "gpt-4o-mini"
    assert mapping.resolve("claude-3-opus-latest") == "claude-3-opus-latest"
    assert all(r.type == "exact" for r in mapping.rules)


def test_mapping_default_wins_over_default_model():
    raw = json.dumps({"mappings": [], "defaultModel": "from-map"})
    assert load_model_mapping(raw, default_model="from-env").resolve("claude-x") == "from-map"

    raw = json.dumps({"mappings": [{"pattern": "opus", "target": "big"}]})
    assert load_model_mapping(raw, default_model="from-env").resolve("claude-x") == "from-env"


def test_mapping_from_file(tmp_path):
    path = tmp_path / "models.json"
    path.write_text(json.dumps({"mappings": [{"pattern": "claude", "target": "x", "type": "contains"}]}))
    assert load_model_mapping(str(path)).resolve("claude-3") == "x"


def test_unreadable_mapping_falls_back(tmp_path, caplog):
    with caplog.at_level("WARNING", logger="msgbridge"):
        mapping = load_model_mapping(str(tmp_path / "missing.json"), default_model="dflt")
    assert mapping.rules == ()
    assert mapping.resolve("claude") == "dflt"
    assert "MODEL_MAP" in caplog.text
    assert load_model_mapping("{broken").rules == ()


def test_mapping_is_immutable():
    mapping = ModelMapping()
    with pytest.raises(Exception):
        mapping.default_model = "x"


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("BACKEND_BASE_URL", "http://backend.local/")
    monkeypatch.setenv("BACKEND_AUTH_STYLE", "Authorization")
    monkeypatch.setenv("MODEL_MAP", json.dumps({"claude-3": "target"}))
    monkeypatch.setenv("DEFAULT_MODEL", "dflt")
    monkeypatch.setenv("IMAGE_MODE", "passthrough")
    monkeypatch.setenv("PROXY_MAX_RETRY_AFTER", "not-a-number")
    monkeypatch.setenv("DEBUG_PROXY", "yes")
    s = Settings()
    assert s.backend_base_url == "http://backend.local/"
    assert s.backend_auth_style == "authorization"
    assert s.model_mapping.resolve("claude-3") == "target"
    assert s.model_mapping.resolve("other") == "dflt"
    assert s.image_mode == "passthrough"
    assert s.max_retry_after_seconds == 2.0
    assert s.debug is True


def test_settings_bad_values_use_defaults(monkeypatch):
    monkeypatch.setenv("BACKEND_AUTH_STYLE", "cookie")
    monkeypatch.setenv("IMAGE_MODE", "inline")
    monkeypatch.setenv("PROXY_REQUEST_TIMEOUT", "abc")
    s = Settings()
    assert s.backend_auth_style == "both"
    assert s.image_mode == "placeholder"
    assert s.request_timeout == 120.0
