"""
Tests for `llm_cloud/generation.py` and `llm_cloud/provider.py`.

The OpenAI client is replaced with a MagicMock, so no request leaves the test.
"""

import os
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from llm_cloud.generation import TextGenerator
from llm_cloud.provider import get_client, require_any_env, resolve_provider
from shared.errors import GenerationError

LLM_CONFIG = {
    'provider': 'openai',
    'timeout': 5,
    'models': {
        'classification': {'name': 'small-model', 'settings': {'temperature': 0.1}},
        'generation': {'name': 'big-model', 'settings': {'max_tokens': 100, 'temperature': 0.7, 'top_p': None}},
    },
}


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestTextGenerator(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.client = MagicMock()
        self.generator = TextGenerator(client=self.client, llm_config=LLM_CONFIG)

    async def test_generate_builds_messages_in_order(self):
        self.client.chat.completions.create.return_value = completion("  Sure thing.  ")

        reply = await self.generator.generate(
            history=[{'role': 'user', 'content': 'hi'}, {'role': 'assistant', 'content': 'hello'}],
            user_message="help me",
            system_prompt="be nice",
        )

        self.assertEqual(reply, "Sure thing.")
        kwargs = self.client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs['model'], 'big-model')
        self.assertEqual([m['role'] for m in kwargs['messages']], ['system', 'user', 'assistant', 'user'])
        self.assertEqual(kwargs['messages'][-1]['content'], "help me")
        self.assertEqual(kwargs['max_tokens'], 100)
        self.assertNotIn('top_p', kwargs)
        self.assertNotIn('response_format', kwargs)

    async def test_generate_json_requests_json_object(self):
        self.client.chat.completions.create.return_value = completion('{"a": 1}')

        raw = await self.generator.generate_json("return json", "msg")

        self.assertEqual(raw, '{"a": 1}')
        kwargs = self.client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs['model'], 'small-model')
        self.assertEqual(kwargs['response_format'], {'type': 'json_object'})

    async def test_empty_completion_raises(self):
        self.client.chat.completions.create.return_value = completion("   ")
        with self.assertRaises(GenerationError):
            await self.generator.generate([], "hello")

    async def test_client_errors_are_wrapped(self):
        self.client.chat.completions.create.side_effect = ConnectionError("network down")
        with self.assertRaises(GenerationError) as ctx:
            await self.generator.generate([], "hello")
        self.assertIsInstance(ctx.exception.__cause__, ConnectionError)


class TestProvider(unittest.TestCase):

    def test_require_any_env_returns_first_set_variable(self):
        with patch.dict(os.environ, {'LLM_API_KEY': '', 'NEBIUS_API_KEY': 'secret'}):
            self.assertEqual(require_any_env(['LLM_API_KEY', 'NEBIUS_API_KEY']), ('NEBIUS_API_KEY', 'secret'))

    def test_require_any_env_raises_without_value(self):
        with patch.dict(os.environ, {'LLM_API_KEY': ''}):
            with self.assertRaises(RuntimeError):
                require_any_env(['LLM_API_KEY'])

    def test_unsupported_provider(self):
        with self.assertRaises(ValueError):
            resolve_provider({'llm': {'provider': 'carrier-pigeon'}})

    def test_get_client_for_nebius_uses_configured_base_url(self):
        config = {'llm': {'provider': 'Nebius', 'base_url': 'https://example.test/v1/', 'timeout': 5}}
        with patch.dict(os.environ, {'LLM_API_KEY': 'secret'}), \
                patch('llm_cloud.provider.OpenAI') as openai_cls:
            get_client(config)
        openai_cls.assert_called_once_with(base_url='https://example.test/v1/', api_key='secret', timeout=5)
