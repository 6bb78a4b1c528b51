import json

import pytest
import respx
from httpx import Response

from stepflow.reasoner import ReasonerClient, message_text, parse_tool_calls

BASE = "http://reasoner.test/v1"


@pytest.mark.asyncio
async def test_chat_sends_tools_and_returns_first_message():
    client = ReasonerClient(BASE, "test-model", api_key="k")
    captured = {}
    declaration = {"name": "create_image", "parameters": {"type": "object", "properties": {}}}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers.get("Authorization")
                return Response(
                    200,
                    json={
                        "choices": [
                            {
                                "message": {
                                    "role": "assistant",
                                    "content": None,
                                    "tool_calls": [
                                        {
                                            "id": "c1",
                                            "type": "function",
                                            "function": {"name": "create_image", "arguments": '{"prompt": "cat"}'},
                                        }
                                    ],
                                }
                            }
                        ]
                    },
                )

            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=handler)
            message = await client.chat([{"role": "user", "content": "draw a cat"}], tools=[declaration])
    finally:
        await client.close()

    assert captured["json"]["model"] == "test-model"
    assert captured["json"]["tools"] == [{"type": "function", "function": declaration}]
    assert captured["auth"] == "Bearer k"
    assert parse_tool_calls(message) == [{"id": "c1", "name": "create_image", "args": {"prompt": "cat"}}]


@pytest.mark.asyncio
async def test_chat_raises_with_server_detail():
    client = ReasonerClient(BASE, "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(return_value=Response(400, json={"error": "bad model"}))
            with pytest.raises(RuntimeError) as excinfo:
                await client.chat([{"role": "user", "content": "hi"}])
            assert "bad model" in str(excinfo.value)
    finally:
        await client.close()


def test_parse_tool_calls_tolerates_bad_arguments():
    message = {
        "tool_calls": [
            {"id": "a", "function": {"name": "search_web", "arguments": "{not json"}},
            {"function": {"arguments": "{}"}},
        ]
    }
    assert parse_tool_calls(message) == [{"id": "a", "name": "search_web", "args": {}}]


def test_message_text_joins_parts():
    assert message_text({"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}) == "ab"
    assert message_text({"content": None}) == ""
