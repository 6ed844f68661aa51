"""
Fallback Request Path - HTTP calls used when the channel is unavailable

Same input contract as the channel's generate_website request, but one
blocking call that returns the whole result (no progress streaming).
"""

from typing import Any, Dict, List, Optional

import httpx

from livesync.config import SessionConfig
from livesync.exceptions import GenerationError, RequestTimeoutError, TransportError
from livesync.generation import GenerationResult
from livesync.history import HistoryProvider
from livesync.logging_config import logger


class FallbackClient(HistoryProvider):
    """
    HTTP client for generation and history retrieval.

    Usage:
        client = FallbackClient(config)
        result = await client.generate("p1", "make a landing page", history)
    """

    def __init__(self, config: SessionConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        return headers

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_base_url,
            timeout=timeout,
            transport=self._transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"{default}: HTTP {response.status_code}"
        if isinstance(body, dict):
            return body.get("error") or body.get("detail") or body.get("message") or default
        return default

    async def generate(
        self,
        project_id: str,
        message: str,
        conversation_history: Optional[List[Dict[str, str]]] = None
    ) -> GenerationResult:
        """
        Run one generation over HTTP.

        Raises:
            GenerationError: service returned an error response
            RequestTimeoutError: no response within fallback_timeout
            TransportError: service unreachable
        """
        payload = {
            "projectId": project_id,
            "message": message,
            "conversationHistory": conversation_history or [],
        }

        logger.info(f"Fallback generation for project {project_id}")
        try:
            async with self._client(self.config.fallback_timeout) as client:
                response = await client.post("/ai/generate", json=payload, headers=self._headers())
        except httpx.TimeoutException:
            raise RequestTimeoutError("generate_website", self.config.fallback_timeout)
        except httpx.HTTPError as e:
            raise TransportError(f"Generation service unreachable: {e}")

        if response.status_code >= 400:
            raise GenerationError(
                self._error_message(response, "Failed to generate website"),
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            raise GenerationError("Invalid response from generation service", status_code=response.status_code)

        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise GenerationError("Generation response missing result", status_code=response.status_code)

        return GenerationResult.from_payload(result)

    async def fetch_conversations(self, project_id: str) -> List[Dict[str, Any]]:
        """Stored conversations for a project, oldest first"""
        try:
            async with self._client(self.config.request_timeout) as client:
                response = await client.get(
                    f"/projects/{project_id}/conversations",
                    headers=self._headers()
                )
        except httpx.TimeoutException:
            raise RequestTimeoutError("get_conversations", self.config.request_timeout)
        except httpx.HTTPError as e:
            raise TransportError(f"History service unreachable: {e}")

        if response.status_code >= 400:
            raise TransportError(
                self._error_message(response, "Failed to load conversation history"),
                details={"status_code": response.status_code}
            )

        try:
            body = response.json()
        except ValueError:
            raise TransportError(
                "Invalid response from history service",
                details={"status_code": response.status_code}
            )

        if isinstance(body, dict):
            body = body.get("conversations") or []
        if not isinstance(body, list):
            raise TransportError(
                "History response is not a list of conversations",
                details={"status_code": response.status_code}
            )
        return body
