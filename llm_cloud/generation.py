"""
llm_cloud/generation.py

Text generation collaborator used by the classifier, the extractors and the
composition stage.

The OpenAI SDK client is synchronous, so each completion runs in a worker
thread via `asyncio.to_thread` and never blocks the event loop. Every failure
of the underlying call surfaces as `GenerationError`.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from config import CONFIG
from llm_cloud.provider import get_client
from monitoring.metrics import ERROR_COUNT, LLM_REQUEST_TIME
from shared.errors import GenerationError

logger = logging.getLogger(__name__)


class TextGenerator:
    """
    Thin async wrapper around a chat-completions client.

    Args:
        client: An OpenAI-compatible client. When omitted it is built lazily
            with `get_client()` on first use.
        llm_config (Dict, optional): The 'llm' configuration section; defaults
            to CONFIG['llm'].
    """

    def __init__(self, client=None, llm_config: Optional[Dict] = None):
        self._client = client
        self.llm_config = llm_config if llm_config is not None else CONFIG['llm']

    @property
    def client(self):
        if self._client is None:
            self._client = get_client()
        return self._client

    def _complete(self, messages: List[Dict[str, str]], model_key: str, json_mode: bool) -> str:
        model_config = self.llm_config['models'][model_key]
        settings = model_config.get('settings', {})
        kwargs = {
            'model': model_config['name'],
            'messages': messages,
            'max_tokens': settings.get('max_tokens'),
            'temperature': settings.get('temperature'),
            'top_p': settings.get('top_p'),
        }
        kwargs = {key: value for key, value in kwargs.items() if value is not None}
        if json_mode:
            kwargs['response_format'] = {'type': 'json_object'}

        start_time = time.perf_counter()
        try:
            response = self.client.chat.completions.create(**kwargs)
        finally:
            LLM_REQUEST_TIME.labels(model=model_config['name']).observe(time.perf_counter() - start_time)

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise GenerationError(f"Empty completion from model {model_config['name']}")
        return content.strip()

    async def _run(self, messages: List[Dict[str, str]], model_key: str, json_mode: bool) -> str:
        try:
            return await asyncio.to_thread(self._complete, messages, model_key, json_mode)
        except GenerationError:
            ERROR_COUNT.labels(type='generation', location=model_key).inc()
            raise
        except Exception as e:
            ERROR_COUNT.labels(type='generation', location=model_key).inc()
            logger.error(f"[TextGenerator] Completion failed for '{model_key}': {e}")
            raise GenerationError(f"Text generation failed: {e}") from e

    async def generate(
        self,
        history: List[Dict[str, str]],
        user_message: str,
        system_prompt: Optional[str] = None,
        model_key: str = "generation",
    ) -> str:
        """
        Generate a reply given prior messages and the current user message.

        Args:
            history: Prior messages as {'role', 'content'} dicts, oldest first.
            user_message: The message to answer.
            system_prompt: Optional system prompt placed before the history.
            model_key: Which configured model to use.

        Returns:
            str: The generated text.

        Raises:
            GenerationError: If the completion call fails or returns nothing.
        """
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({'role': 'system', 'content': system_prompt})
        messages.extend({'role': m['role'], 'content': m['content']} for m in history)
        messages.append({'role': 'user', 'content': user_message})
        return await self._run(messages, model_key, json_mode=False)

    async def generate_json(self, system_prompt: str, user_message: str, model_key: str = "classification") -> str:
        """Ask for a JSON object answer; returns the raw JSON text."""
        messages = [
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': user_message},
        ]
        return await self._run(messages, model_key, json_mode=True)
