"""
Text-completion client.

The pipeline only ever needs "prompt in, text out". Classification goes
through `TextCompletionClient.complete`; answers go through
`stream_complete`, which yields the text as the model produces it. A failure
of any kind is raised as `CompletionError` so each caller can degrade the
same way.
"""

import json
import logging
import re
from typing import Any, AsyncIterator, Dict, Optional, Protocol

import google.generativeai as genai

from app.assistant.outcome import CompletionError

logger = logging.getLogger(__name__)


class TextCompletionClient(Protocol):
    """Anything that can turn a prompt into text."""

    async def complete(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.3
    ) -> str:
        ...

    def stream_complete(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.3
    ) -> AsyncIterator[str]:
        ...


def _has_parts(response) -> bool:
    # Blocked responses (and some stream chunks) come back without parts
    return bool(response.candidates) and bool(response.candidates[0].content.parts)


class GeminiClient:
    """Gemini implementation of TextCompletionClient."""

    def __init__(self, api_key: str, model: str = "gemini-1.5-flash"):
        self.model_name = model
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name=model)

    async def complete(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.3
    ) -> str:
        config = genai.GenerationConfig(
            max_output_tokens=max_tokens, temperature=temperature
        )

        try:
            response = await self.model.generate_content_async(
                prompt, generation_config=config
            )
        except Exception as error:
            raise CompletionError(f"Gemini call failed: {error}") from error

        if not _has_parts(response):
            finish_reason = (
                response.candidates[0].finish_reason
                if response.candidates
                else "UNKNOWN"
            )
            raise CompletionError(f"Gemini returned no content ({finish_reason})")

        try:
            text = response.text or ""
        except ValueError as error:
            raise CompletionError(f"Gemini answer unreadable: {error}") from error
        if not text.strip():
            raise CompletionError("Gemini returned an empty answer")
        return text

    async def stream_complete(
        self, prompt: str, max_tokens: int = 1024, temperature: float = 0.3
    ) -> AsyncIterator[str]:
        config = genai.GenerationConfig(
            max_output_tokens=max_tokens, temperature=temperature
        )

        try:
            response = await self.model.generate_content_async(
                prompt, generation_config=config, stream=True
            )
        except Exception as error:
            raise CompletionError(f"Gemini call failed: {error}") from error

        try:
            async for chunk in response:
                if not _has_parts(chunk):
                    continue
                if chunk.text:
                    yield chunk.text
        except Exception as error:
            raise CompletionError(f"Gemini stream failed: {error}") from error


_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$", re.MULTILINE)


def parse_json_object(text: str) -> Dict[str, Any]:
    """
    Pull the first JSON object out of a model answer.

    Models like to wrap JSON in markdown fences or add a sentence before it,
    so strip fences and fall back to the outermost {...} span.
    Raises CompletionError when nothing parses to a dict.
    """
    cleaned = _FENCE.sub("", text.strip()).strip()

    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise CompletionError("Model answer is not a JSON object")


def build_completion_client(
    api_key: Optional[str], model: str
) -> Optional[TextCompletionClient]:
    if not api_key:
        logger.info("GEMINI_API_KEY not set: assistant runs on heuristics and fixed answers")
        return None
    return GeminiClient(api_key, model=model)
