"""Async client for the generative inference provider (OpenAI Responses API)."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, TypeVar

from pydantic import BaseModel

from credo.config import Settings, get_settings

log = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class LLMCallError(Exception):
    """LLM call failed or returned output that does not fit the schema."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class LLMClient:
    """Schema-constrained calls and file uploads against the OpenAI API.

    One instance is built per process from :class:`Settings` and passed to the
    pipeline steps; steps never construct their own client.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        settings = settings or get_settings()
        self.model = model or settings.llm_model
        self.reasoning_effort = settings.llm_reasoning_effort
        self._api_key = api_key or settings.openai_api_key
        self._base_url = base_url or settings.openai_base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        import openai
        kwargs: dict[str, Any] = {}
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._base_url:
            kwargs["base_url"] = self._base_url
        self._client = openai.AsyncOpenAI(**kwargs)

    async def upload_file(self, filename: str, data: bytes, mime_type: str) -> str:
        """Put a document into the provider's file store, return its file id."""
        try:
            uploaded = await self._client.files.create(
                file=(filename, data, mime_type),
                purpose="user_data",
            )
        except Exception as exc:
            raise LLMCallError(f"File upload failed for {filename}: {exc}", retryable=True) from exc
        return uploaded.id

    async def parse(
        self,
        system: str,
        user: str,
        schema: type[T],
        file_ids: Sequence[str] = (),
        web_search: bool = False,
    ) -> T:
        """Run a structured query and return the parsed *schema* instance.

        Attached file ids are sent as ``input_file`` parts ahead of the user text.
        With ``web_search`` the model may use the hosted web search tool.
        """
        content: list[dict[str, Any]] = [
            {"type": "input_file", "file_id": fid} for fid in file_ids if fid
        ]
        content.append({"type": "input_text", "text": user})
        kwargs: dict[str, Any] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": system},
                {"role": "user", "content": content},
            ],
            "text_format": schema,
        }
        if web_search:
            kwargs["tools"] = [{"type": "web_search_preview"}]
            kwargs["tool_choice"] = "auto"
        if self.reasoning_effort and self.model.startswith(("gpt-5", "o")):
            kwargs["reasoning"] = {"effort": self.reasoning_effort}

        try:
            response = await self._client.responses.parse(**kwargs)
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        parsed = getattr(response, "output_parsed", None)
        if parsed is None:
            raise LLMCallError(f"LLM returned no parseable {schema.__name__} output", retryable=False)
        log.debug("Parsed %s from %s", schema.__name__, self.model)
        return parsed
