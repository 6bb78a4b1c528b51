from typing import Any, Dict, List, Optional

import httpx


class MessagingClient:
    """Green-API style chat channel: every send is a JSON POST to ``{base_url}/<method>``."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        send_delay_ms: int = 1000,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.send_delay_ms = send_delay_ms
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
            transport=transport,
        )

    def _base_payload(
        self, conversation_id: str, quoted_message_id: Optional[str], delay_ms: Optional[int]
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chatId": conversation_id}
        if quoted_message_id:
            payload["quotedMessageId"] = quoted_message_id
        typing = self.send_delay_ms if delay_ms is None else delay_ms
        if typing:
            payload["typingTime"] = int(typing)
        return payload

    async def send_text(
        self,
        conversation_id: str,
        text: str,
        quoted_message_id: Optional[str] = None,
        delay_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        payload = self._base_payload(conversation_id, quoted_message_id, delay_ms)
        payload["message"] = text
        return await self._post("sendMessage", payload)

    async def send_file(
        self,
        conversation_id: str,
        url: str,
        filename: str,
        caption: str = "",
        quoted_message_id: Optional[str] = None,
        delay_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        payload = self._base_payload(conversation_id, quoted_message_id, delay_ms)
        payload.update({"urlFile": url, "fileName": filename, "caption": caption or ""})
        return await self._post("sendFileByUrl", payload)

    async def send_poll(
        self,
        conversation_id: str,
        question: str,
        options: List[str],
        multiple_answers: bool = False,
        quoted_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = self._base_payload(conversation_id, quoted_message_id, 0)
        payload.update(
            {
                "message": question,
                "options": [{"optionName": option} for option in options],
                "multipleAnswers": multiple_answers,
            }
        )
        return await self._post("sendPoll", payload)

    async def send_location(
        self,
        conversation_id: str,
        latitude: float,
        longitude: float,
        name: str = "",
        address: str = "",
        quoted_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = self._base_payload(conversation_id, quoted_message_id, 0)
        payload.update(
            {
                "latitude": latitude,
                "longitude": longitude,
                "nameLocation": name,
                "address": address,
            }
        )
        return await self._post("sendLocation", payload)

    async def _post(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        try:
            resp = await self.client.post(f"{self.base_url}/{method}", json=payload, headers=headers)
            resp.raise_for_status()
            try:
                return resp.json()
            except ValueError:
                return {}
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
