"""
Copilot Chat and Knowledge Search clients
Narrow ports for the external collaborators plus aiohttp implementations
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import List, Optional
import logging
import aiohttp
from copilot_eval.config.settings import settings
from copilot_eval.models.copilot import ChatConversation, ChatRequest, SearchHit
from copilot_eval.utils.errors import CollaboratorError
from copilot_eval.utils.helpers import truncate

logger = logging.getLogger(__name__)


class ChatClient(ABC):
    """Chat-completion collaborator"""

    @abstractmethod
    async def create_conversation(self, auth_token: Optional[str]) -> str:
        ...

    @abstractmethod
    async def chat(self, auth_token: Optional[str], conversation_id: str, request: ChatRequest) -> ChatConversation:
        ...

    async def close(self) -> None:
        pass


class KnowledgeSearchClient(ABC):
    """Knowledge-source search collaborator"""

    @abstractmethod
    async def search(self, auth_token: Optional[str], source_id: str, query: str,
                     max_results: int = 3) -> List[SearchHit]:
        ...

    async def close(self) -> None:
        pass


def format_search_context(hits: List[SearchHit], source_name: str) -> str:
    """Render search hits as grounding text prepended to a prompt"""
    if not hits:
        return f"No relevant information found in {source_name} knowledge source."

    lines = [f"Relevant information from {source_name} knowledge source:", ""]
    for i, hit in enumerate(hits, 1):
        lines.append(f"[Result {i}]")
        if hit.summary:
            lines.append(hit.summary)
        elif hit.resource is not None:
            lines.append(f"Resource: {json.dumps(hit.resource, default=str)}")
        lines.append("")
    lines.append("Please base your response primarily on the information provided above "
                 "from the selected knowledge source.")
    return "\n".join(lines)


class _HttpClient:
    """Shared aiohttp session handling for the collaborator clients"""

    def __init__(self, base_url: str, timeout_seconds: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(
            total=timeout_seconds or settings.COPILOT_REQUEST_TIMEOUT_SECONDS
        )
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _post_json(self, path: str, auth_token: Optional[str], payload: dict) -> dict:
        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().post(url, json=payload, headers=headers) as response:
                text = await response.text()
                if response.status >= 400:
                    raise CollaboratorError(
                        f"POST {path} failed with status {response.status}: {truncate(text, 200)}",
                        status=response.status,
                    )
                return json.loads(text) if text else {}
        except asyncio.TimeoutError as e:
            raise CollaboratorError(f"POST {path} timed out") from e
        except aiohttp.ClientError as e:
            raise CollaboratorError(f"POST {path} failed: {e}") from e

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


class CopilotChatClient(_HttpClient, ChatClient):
    """Chat collaborator reached over HTTP"""

    async def create_conversation(self, auth_token: Optional[str]) -> str:
        data = await self._post_json("/copilot/conversations", auth_token, {})
        conversation_id = data.get("id")
        if not conversation_id:
            raise CollaboratorError("No conversation ID returned")
        logger.debug(f"Created conversation {conversation_id}")
        return conversation_id

    async def chat(self, auth_token: Optional[str], conversation_id: str, request: ChatRequest) -> ChatConversation:
        payload = {k: v for k, v in request.to_wire().items() if v is not None}
        data = await self._post_json(f"/copilot/conversations/{conversation_id}/chat", auth_token, payload)
        conversation = ChatConversation.model_validate(data)
        logger.debug(f"Chat on {conversation_id} returned {len(conversation.messages)} messages")
        return conversation


class GraphSearchClient(_HttpClient, KnowledgeSearchClient):
    """Knowledge-source search over external connections"""

    async def search(self, auth_token: Optional[str], source_id: str, query: str,
                     max_results: int = 3) -> List[SearchHit]:
        payload = {
            "requests": [{
                "entityTypes": ["externalItem"],
                "contentSources": [f"/external/connections/{source_id}"],
                "query": {"queryString": query},
                "from": 0,
                "size": max_results,
                "fields": ["title", "content", "url"],
            }]
        }
        data = await self._post_json("/search/query", auth_token, payload)
        hits = []
        for container in data.get("value", []):
            for hits_container in container.get("hitsContainers", []):
                for hit in hits_container.get("hits", []):
                    hits.append(SearchHit.model_validate(hit))
        return hits[:max_results]
