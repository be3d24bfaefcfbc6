"""Hati 服务的异步 HTTP 客户端。

非流式接口返回解析后的 JSON；send_message 通过 ChatStreamConsumer 增量更新 Transcript，
收到 done 后重新拉取会话历史，与服务端落库的助手消息对齐。
流中断不会自动重连，重新发送即可。
"""

from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from hati_core.client.consumer import ChatStreamConsumer, Transcript
from hati_core.domain.exceptions import BusinessError, NetworkError


class HatiClient:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, read=None),
            transport=transport,
        )
        self.token = token

    async def __aenter__(self) -> "HatiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ---- 登录 ----

    async def login(self, password: str) -> str:
        data = await self._request("POST", "/auth/login", json={"password": password})
        self.token = data["token"]
        return self.token

    # ---- 会话 ----

    async def list_conversations(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/conversations")

    async def create_conversation(self, title: str = "") -> Dict[str, Any]:
        return await self._request("POST", "/conversations", json={"title": title})

    async def get_conversation(self, conversation_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/conversations/{conversation_id}")

    async def delete_conversation(self, conversation_id: int) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    async def load_transcript(self, conversation_id: int) -> Transcript:
        transcript = Transcript()
        transcript.reconcile((await self.get_conversation(conversation_id))["messages"])
        return transcript

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        consumer: Optional[ChatStreamConsumer] = None,
        reconcile: bool = True,
    ) -> Transcript:
        """发送一条消息并消费流式回答，返回更新后的 Transcript。"""

        consumer = consumer or ChatStreamConsumer()
        consumer.begin(content)
        try:
            async with self._http.stream(
                "POST",
                f"/conversations/{conversation_id}/messages",
                json={"content": content},
                headers=self._headers(),
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    error = self._to_error(resp)
                    consumer.fail(error.message)
                    raise error
                async for chunk in resp.aiter_bytes():
                    consumer.feed(chunk)
            consumer.finish()
        except httpx.HTTPError as e:
            consumer.fail(str(e))
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

        if consumer.completed and reconcile:
            consumer.transcript.reconcile((await self.get_conversation(conversation_id))["messages"])
        return consumer.transcript

    # ---- 语音与图片 ----

    async def stream_tts(self, text: str, voice: Optional[str] = None) -> AsyncIterator[bytes]:
        """逐块产出 /tts 的原始字节，交给调用方自行分行解析。"""

        body: Dict[str, Any] = {"text": text}
        if voice:
            body["voice"] = voice
        try:
            async with self._http.stream("POST", "/tts", json=body, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise self._to_error(resp)
                async for chunk in resp.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    async def generate_image(self, prompt: str, size: str = "1024x1024") -> Optional[str]:
        data = await self._request("POST", "/generate-image", json={"prompt": prompt, "size": size})
        return data.get("b64_json")

    # ---- 内部工具 ----

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._http.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            raise self._to_error(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _to_error(resp: httpx.Response) -> BusinessError:
        code, message = "HTTP_ERROR", resp.text or f"HTTP {resp.status_code}"
        try:
            data = resp.json()
        except ValueError:
            data = None
        err = data.get("error") if isinstance(data, dict) else None
        if isinstance(err, dict):
            code = err.get("code") or code
            message = err.get("message") or message
        return BusinessError(code=code, message=message, http_status=resp.status_code)
