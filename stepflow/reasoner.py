import json
from typing import Any, Dict, List, Optional

import httpx


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except Exception:
        pass
    try:
        return response.text
    except Exception:
        return ""


def parse_tool_calls(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Turn OpenAI-style ``tool_calls`` into ``[{id, name, args}]``.

    Arguments arrive as a JSON string; unparseable arguments become ``{}``.
    """
    calls: List[Dict[str, Any]] = []
    for idx, raw in enumerate(message.get("tool_calls") or []):
        fn = raw.get("function") or {}
        name = fn.get("name")
        if not name:
            continue
        args_raw = fn.get("arguments")
        if isinstance(args_raw, dict):
            args = args_raw
        else:
            try:
                args = json.loads(args_raw or "{}")
            except (TypeError, ValueError):
                args = {}
        calls.append({"id": raw.get("id") or f"call_{idx}", "name": name, "args": args if isinstance(args, dict) else {}})
    return calls


def message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, list):
        parts = [part.get("text", "") for part in content if isinstance(part, dict)]
        return "".join(parts).strip()
    return (content or "").strip()


class ReasonerClient:
    """OpenAI-compatible chat completions client used for the inner single-step pass."""

    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout)

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> Dict[str, Any]:
        """Return the assistant message of the first choice.

        Raises ``RuntimeError`` with the server detail when the request fails.
        """
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = [{"type": "function", "function": decl} for decl in tools]
            payload["tool_choice"] = "auto"
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _extract_error_detail(exc.response)
            raise RuntimeError(f"Reasoner request failed ({exc.response.status_code}): {detail}") from exc
        except httpx.RequestError as exc:
            raise RuntimeError(f"Reasoner unreachable: {exc}") from exc
        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            return {"role": "assistant", "content": ""}
        message = choices[0].get("message") or {}
        if not message.get("content"):
            fallback = message.get("reasoning") or message.get("reasoning_content")
            if fallback and not message.get("tool_calls"):
                message["content"] = fallback
        return message

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
