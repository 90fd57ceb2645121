import json

import pytest

from msgbridge.config import ModelMapping, ModelMappingRule
from msgbridge.errors import ErrorType
from msgbridge.transform import (
    anthropic_to_openai_payload,
    json_loads_safe,
    map_finish_reason,
    openai_to_anthropic_response,
)


def _convert(req, **kwargs):
    kwargs.setdefault("mapping", ModelMapping())
    kwargs.setdefault("image_mode", "placeholder")
    return anthropic_to_openai_payload(req, **kwargs)


def _oai(message, finish_reason="stop", usage=None):
    return {
        "id": "chatcmpl-xyz",
        "object": "chat.completion",
        "created": 1,
        "model": "gpt-sim",
        "choices": [{"index": 0, "message": {"role": "assistant", **message}, "finish_reason": finish_reason}],
        "usage": usage or {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }


def test_text_only_request_mapping():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 32,
        "messages": [
            {"role": "user", "content": [{"type": "text", "text": "Hel"}, {"type": "text", "text": "lo"}]}
        ],
        "temperature": 0.1,
        "top_p": 0.9,
        "stop_sequences": ["\n\n"],
    }
    result = _convert(req)
    assert result.success
    out = result.value
    assert out["model"] == "claude-3-sonnet"
    assert out["max_tokens"] == 32
    assert out["messages"][0] == {"role": "user", "content": "Hello"}
    assert out["temperature"] == 0.1
    assert out["top_p"] == 0.9
    assert out["stop"] == ["\n\n"]
    assert out["stream"] is False
    assert "tools" not in out and "tool_choice" not in out


def test_string_content_and_system_prompt():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 8,
        "system": [{"type": "text", "text": "Be terse."}],
        "messages": [{"role": "user", "content": "  Hi there  "}],
        "stream": True,
    }
    out = _convert(req).value
    assert out["messages"][0] == {"role": "system", "content": "Be terse."}
    assert out["messages"][1] == {"role": "user", "content": "  Hi there  "}
    assert out["stream"] is True


def test_tools_request_mapping():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 16,
        "tools": [
            {
                "name": "get_weather",
                "description": "Get weather",
                "input_schema": {
                    "type": "object",
                    "properties": {"city": {"type": "string"}},
                    "required": ["city"],
                },
            }
        ],
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What's the weather?"},
                    {
                        "type": "tool_result",
                        "tool_use_id": "toolu_1",
                        "content": [{"type": "text", "text": "{\"temp\":20}"}],
                    },
                ],
            },
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "I'll check."},
                    {
                        "type": "tool_use",
                        "id": "toolu_1",
                        "name": "get_weather",
                        "input": {"city": "SF"},
                    },
                ],
            },
        ],
    }
    out = _convert(req).value
    msgs = out["messages"]
    assert msgs[0] == {"role": "user", "content": "What's the weather?"}
    assert msgs[1] == {"role": "tool", "tool_call_id": "toolu_1", "content": "{\"temp\":20}"}
    assert msgs[2]["role"] == "assistant" and msgs[2]["content"] == "I'll check."
    call = msgs[2]["tool_calls"][0]
    assert call["id"] == "toolu_1"
    assert call["function"]["name"] == "get_weather"
    assert json.loads(call["function"]["arguments"]) == {"city": "SF"}
    assert out["tools"][0] == {
        "type": "function",
        "function": {
            "name": "get_weather",
            "description": "Get weather",
            "parameters": req["tools"][0]["input_schema"],
        },
    }
    assert out["tool_choice"] == "auto"


def test_tool_result_error_is_prefixed():
    req = {
        "model": "m",
        "max_tokens": 4,
        "messages": [
            {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "boom", "is_error": True}],
            }
        ],
    }
    out = _convert(req).value
    assert out["messages"] == [{"role": "tool", "tool_call_id": "t1", "content": "Error: boom"}]


@pytest.mark.parametrize(
    "choice, expected",
    [
        ({"type": "auto"}, "auto"),
        ({"type": "any"}, "required"),
        ({"type": "none"}, "none"),
        ({"type": "tool", "name": "get_weather"}, {"type": "function", "function": {"name": "get_weather"}}),
        ({"name": "get_weather"}, {"name": "get_weather"}),
    ],
)
def test_explicit_tool_choice_is_translated(choice, expected):
    req = {
        "model": "m",
        "max_tokens": 4,
        "messages": [{"role": "user", "content": "hi"}],
        "tools": [{"name": "get_weather", "input_schema": {"type": "object"}}],
        "tool_choice": choice,
    }
    assert _convert(req).value["tool_choice"] == expected


@pytest.mark.parametrize("tools", [None, [], [{"description": "no name"}]])
def test_tool_choice_unset_without_effective_tools(tools):
    req = {
        "model": "m",
        "max_tokens": 4,
        "messages": [{"role": "user", "content": "hi"}],
        "tool_choice": {"type": "tool", "name": "get_weather"},
    }
    if tools is not None:
        req["tools"] = tools
    out = _convert(req).value
    assert "tool_choice" not in out
    assert "tools" not in out


def test_image_block_placeholder():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 16,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Look at this image:"},
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": "image/jpeg", "data": "base64data"},
                    },
                ],
            }
        ],
    }
    content = _convert(req).value["messages"][0]["content"]
    assert "Look at this image:" in content
    assert "[Image content provided: image/jpeg]" in content


def test_image_block_passthrough():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 16,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What is in the image?"},
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": "image/png",
                            "data": "iVBORw0KGgoAAAANSUhEUgAA...",
                        },
                    },
                ],
            }
        ],
    }
    msg = _convert(req, image_mode="passthrough").value["messages"][0]
    assert msg["role"] == "user"
    assert msg["content"][0] == {"type": "text", "text": "What is in the image?"}
    assert msg["content"][1]["type"] == "image_url"
    assert msg["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_image_block_rejected_when_configured():
    req = {
        "model": "m",
        "max_tokens": 16,
        "messages": [
            {"role": "user", "content": [{"type": "image", "source": {"type": "url", "url": "https://x/y.png"}}]}
        ],
    }
    result = _convert(req, image_mode="reject")
    assert not result.success
    assert result.error.type is ErrorType.INVALID_REQUEST


@pytest.mark.parametrize("block_type, word", [("input_audio", "Audio"), ("file", "File")])
def test_unsupported_modalities_rejected(block_type, word):
    req = {
        "model": "m",
        "max_tokens": 100,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Take this:"},
                    {"type": block_type, "source": {"type": "base64", "media_type": "x/y", "data": "zz"}},
                ],
            }
        ],
    }
    result = _convert(req)
    assert not result.success
    assert result.error.type is ErrorType.NOT_SUPPORTED
    assert word in result.error.message
    assert result.error.message.isascii()


@pytest.mark.parametrize(
    "req, needle",
    [
        ({"model": "m", "messages": [{"role": "user", "content": "hi"}]}, "max_tokens"),
        ({"model": "m", "max_tokens": 0, "messages": [{"role": "user", "content": "hi"}]}, "max_tokens"),
        ({"max_tokens": 5, "messages": [{"role": "user", "content": "hi"}]}, "model"),
        ({"model": "m", "max_tokens": 5, "messages": []}, "messages"),
        ({"model": "m", "max_tokens": 5, "messages": [{"role": "system", "content": "hi"}]}, "role"),
    ],
)
def test_validation_errors(req, needle):
    result = _convert(req)
    assert not result.success
    assert result.error.type is ErrorType.INVALID_REQUEST
    assert needle in result.error.message


def test_misplaced_tool_blocks_rejected():
    user_tool_use = {
        "model": "m",
        "max_tokens": 5,
        "messages": [{"role": "user", "content": [{"type": "tool_use", "id": "a", "name": "x", "input": {}}]}],
    }
    assistant_tool_result = {
        "model": "m",
        "max_tokens": 5,
        "messages": [{"role": "assistant", "content": [{"type": "tool_result", "tool_use_id": "a", "content": "r"}]}],
    }
    for req in (user_tool_use, assistant_tool_result):
        result = _convert(req)
        assert result.error.type is ErrorType.INVALID_REQUEST


def test_model_mapping_applied():
    mapping = ModelMapping(
        rules=(ModelMappingRule(pattern="claude", target="qwen3-coder-plus", type="contains"),),
    )
    req = {"model": "claude-3-opus", "max_tokens": 5, "messages": [{"role": "user", "content": "hi"}]}
    assert _convert(req, mapping=mapping).value["model"] == "qwen3-coder-plus"


def test_openai_tool_calls_to_anthropic_response():
    oai_resp = _oai(
        {
            "content": "Let me call a tool.",
            "tool_calls": [
                {
                    "id": "call_123",
                    "type": "function",
                    "function": {"name": "get_weather", "arguments": "{\"city\":\"SF\"}"},
                }
            ],
        },
        finish_reason="tool_calls",
    )
    anth = openai_to_anthropic_response(oai_resp, requested_model="claude-3-sonnet").value
    assert anth["id"].startswith("msg_")
    assert anth["model"] == "claude-3-sonnet"
    assert anth["stop_reason"] == "tool_use"
    assert anth["stop_sequence"] is None
    assert anth["content"][0] == {"type": "text", "text": "Let me call a tool."}
    assert anth["content"][1] == {"type": "tool_use", "id": "call_123", "name": "get_weather", "input": {"city": "SF"}}
    assert anth["usage"] == {"input_tokens": 5, "output_tokens": 2}


def test_tool_call_empty_arguments_become_empty_input():
    oai_resp = _oai(
        {"content": None, "tool_calls": [{"id": "c1", "function": {"name": "ping", "arguments": ""}}]},
        finish_reason="tool_calls",
    )
    anth = openai_to_anthropic_response(oai_resp).value
    assert anth["content"] == [{"type": "tool_use", "id": "c1", "name": "ping", "input": {}}]


def test_malformed_tool_call_arguments_become_text(caplog):
    oai_resp = _oai(
        {"content": None, "tool_calls": [{"id": "c1", "function": {"name": "ping", "arguments": "{not json"}}]},
        finish_reason="tool_calls",
    )
    with caplog.at_level("WARNING", logger="msgbridge"):
        anth = openai_to_anthropic_response(oai_resp).value
    assert anth["content"] == [{"type": "text", "text": "Error: Invalid tool call arguments for ping"}]
    assert "ping" in caplog.text


def test_object_tool_call_arguments_are_accepted():
    oai_resp = _oai(
        {
            "content": "Calling.",
            "tool_calls": [{"id": "c1", "function": {"name": "ping", "arguments": {"host": "a", "n": 1}}}],
        },
        finish_reason="tool_calls",
    )
    result = openai_to_anthropic_response(oai_resp)
    assert result.success
    assert result.value["content"] == [
        {"type": "text", "text": "Calling."},
        {"type": "tool_use", "id": "c1", "name": "ping", "input": {"host": "a", "n": 1}},
    ]


def test_non_object_tool_call_arguments_become_text():
    oai_resp = _oai(
        {"content": None, "tool_calls": [{"id": "c1", "function": {"name": "ping", "arguments": [1, 2]}}]},
        finish_reason="tool_calls",
    )
    anth = openai_to_anthropic_response(oai_resp).value
    assert anth["content"] == [{"type": "text", "text": "Error: Invalid tool call arguments for ping"}]


def test_reasoning_only_response():
    anth = openai_to_anthropic_response(_oai({"content": "", "reasoning_content": "准确的当前日期"})).value
    assert anth["content"] == [{"type": "text", "text": "准确的当前日期"}]


def test_reasoning_and_content_response():
    anth = openai_to_anthropic_response(
        _oai({"content": "The answer is 4.", "reasoning_content": "2 + 2 = 4"})
    ).value
    assert [b["text"] for b in anth["content"]] == ["2 + 2 = 4", "The answer is 4."]


def test_think_tags_in_content():
    anth = openai_to_anthropic_response(_oai({"content": "<think>x</think>"})).value
    assert anth["content"] == [{"type": "text", "text": "x"}]


def test_inline_tool_call_markup_becomes_tool_use():
    content = (
        "<｜tool▁calls▁begin｜><｜tool▁call▁begin｜>get_weather<｜tool▁sep｜>"
        "{\"location\": \"SF\"}<｜tool▁call▁end｜><｜tool▁calls▁end｜>"
    )
    anth = openai_to_anthropic_response(_oai({"content": content})).value
    block = anth["content"][0]
    assert block["type"] == "tool_use"
    assert block["name"] == "get_weather"
    assert block["input"] == {"location": "SF"}


def test_empty_response_gets_empty_text_block():
    anth = openai_to_anthropic_response(_oai({"content": None})).value
    assert anth["content"] == [{"type": "text", "text": ""}]
    assert anth["stop_reason"] == "end_turn"


@pytest.mark.parametrize("body", [{"choices": []}, {"object": "chat.completion"}, {"choices": "nope"}])
def test_invalid_backend_response_is_api_error(body):
    result = openai_to_anthropic_response(body)
    assert not result.success
    assert result.error.type is ErrorType.API


@pytest.mark.parametrize(
    "fr, expected",
    [
        ("stop", "end_turn"),
        ("length", "max_tokens"),
        ("tool_calls", "tool_use"),
        ("function_call", "tool_use"),
        ("content_filter", "end_turn"),
        ("", "end_turn"),
        (None, "end_turn"),
        ("unexpected", "end_turn"),
    ],
)
def test_map_finish_reason(fr, expected):
    assert map_finish_reason(fr) == expected


def test_json_loads_safe_repairs_invalid_escapes():
    assert json_loads_safe('{"path": "C:\\dir"}') == {"path": "C:dir"}
    assert json_loads_safe("{nope") is None
