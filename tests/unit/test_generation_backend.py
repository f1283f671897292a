"""Unit tests for the provider backends and the generation session."""
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import openai

from conftest import ScriptedBackend, truncated
from site_translator.generation_backend import (
    AnthropicBackend,
    GenerationError,
    GenerationSession,
    OpenAIBackend,
    _retry_after_seconds,
    create_backend,
)
from site_translator.run_log import TranslationRunLog

REQUEST = httpx.Request('POST', 'https://api.example.test/v1')


def _openai_response(content, finish_reason='stop', prompt_tokens=12, completion_tokens=4):
    choice = SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)
    usage = SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return SimpleNamespace(choices=[choice], usage=usage)


def _anthropic_message(text, stop_reason='end_turn'):
    return SimpleNamespace(
        content=[SimpleNamespace(type='text', text=text)],
        usage=SimpleNamespace(input_tokens=20, output_tokens=7),
        stop_reason=stop_reason,
    )


def _rate_limit_error(module, headers=None):
    response = httpx.Response(429, headers=headers or {}, request=REQUEST)
    return module.RateLimitError('rate limited', response=response, body=None)


class TestOpenAIBackend(unittest.IsolatedAsyncioTestCase):
    def _backend(self, create):
        client = MagicMock()
        client.chat.completions.create = create
        return OpenAIBackend(client, max_retries=3, base_delay=0.01)

    async def test_successful_completion(self):
        create = AsyncMock(return_value=_openai_response('  Bonjour  '))
        result = await self._backend(create).generate('gpt-4o', 'Translate', 100)

        self.assertEqual(result.text, 'Bonjour')
        self.assertEqual((result.usage.input_tokens, result.usage.output_tokens), (12, 4))
        self.assertFalse(result.truncated)
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs['model'], 'gpt-4o')
        self.assertEqual(kwargs['max_tokens'], 100)
        self.assertEqual(kwargs['messages'][0]['content'], 'Translate')

    async def test_length_finish_reason_is_truncation(self):
        create = AsyncMock(return_value=_openai_response('Bonj', finish_reason='length'))
        result = await self._backend(create).generate('gpt-4o', 'Translate', 2)
        self.assertTrue(result.truncated)

    @patch('site_translator.generation_backend.asyncio.sleep', new_callable=AsyncMock)
    async def test_rate_limit_is_retried_with_retry_after(self, mock_sleep):
        create = AsyncMock(side_effect=[_rate_limit_error(openai, {'retry-after': '2'}),
                                        _openai_response('Bonjour')])
        result = await self._backend(create).generate('gpt-4o', 'Translate', 100)

        self.assertEqual(result.text, 'Bonjour')
        self.assertEqual(create.await_count, 2)
        mock_sleep.assert_awaited_once_with(2.0)

    @patch('site_translator.generation_backend.asyncio.sleep', new_callable=AsyncMock)
    async def test_gives_up_after_max_retries(self, mock_sleep):
        create = AsyncMock(side_effect=_rate_limit_error(openai))
        with self.assertRaises(GenerationError):
            await self._backend(create).generate('gpt-4o', 'Translate', 100)
        self.assertEqual(create.await_count, 3)
        self.assertEqual(mock_sleep.await_count, 2)

    @patch('site_translator.generation_backend.asyncio.sleep', new_callable=AsyncMock)
    async def test_client_errors_are_not_retried(self, mock_sleep):
        error = openai.BadRequestError('bad request', response=httpx.Response(400, request=REQUEST), body=None)
        create = AsyncMock(side_effect=error)
        with self.assertRaises(GenerationError):
            await self._backend(create).generate('gpt-4o', 'Translate', 100)
        self.assertEqual(create.await_count, 1)
        mock_sleep.assert_not_awaited()


class TestAnthropicBackend(unittest.IsolatedAsyncioTestCase):
    def _backend(self, create):
        client = MagicMock()
        client.messages.create = create
        return AnthropicBackend(client, max_retries=2, base_delay=0.01)

    async def test_successful_message(self):
        create = AsyncMock(return_value=_anthropic_message(' Hallo '))
        result = await self._backend(create).generate('model-id', 'Translate', 100)
        self.assertEqual(result.text, 'Hallo')
        self.assertEqual((result.usage.input_tokens, result.usage.output_tokens), (20, 7))
        self.assertFalse(result.truncated)

    async def test_max_tokens_stop_is_truncation(self):
        create = AsyncMock(return_value=_anthropic_message('Hal', stop_reason='max_tokens'))
        result = await self._backend(create).generate('model-id', 'Translate', 2)
        self.assertTrue(result.truncated)

    @patch('site_translator.generation_backend.asyncio.sleep', new_callable=AsyncMock)
    async def test_rate_limit_is_retried(self, mock_sleep):
        create = AsyncMock(side_effect=[_rate_limit_error(anthropic), _anthropic_message('Hallo')])
        result = await self._backend(create).generate('model-id', 'Translate', 100)
        self.assertEqual(result.text, 'Hallo')
        mock_sleep.assert_awaited_once()


class TestHelpers(unittest.TestCase):
    def test_retry_after_seconds(self):
        def error(headers):
            return SimpleNamespace(response=SimpleNamespace(headers=headers))

        self.assertEqual(_retry_after_seconds(error({'Retry-After': '3'})), 3.0)
        self.assertEqual(_retry_after_seconds(error({'retry-after': '500ms'})), 0.5)
        self.assertIsNone(_retry_after_seconds(error({})))
        self.assertIsNone(_retry_after_seconds(None))

    def test_create_backend(self):
        self.assertIsInstance(create_backend('openai', 'sk-test'), OpenAIBackend)
        self.assertIsInstance(create_backend('anthropic', 'sk-ant-test'), AnthropicBackend)
        with self.assertRaises(ValueError):
            create_backend('other', 'key')


class TestGenerationSession(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.run_log = TranslationRunLog(lang='fr', lang_name='French', model='test-model')

    async def test_usage_is_accumulated(self):
        session = GenerationSession(ScriptedBackend(['Bonjour', truncated('Bon')]), 'test-model', self.run_log)

        first = await session.request('p1', 100)
        second = await session.request('p2', 100)

        self.assertTrue(first.ok)
        self.assertEqual(first.text, 'Bonjour')
        self.assertFalse(second.ok)
        self.assertEqual(second.error, 'Response truncated (max_tokens=100)')
        self.assertEqual((self.run_log.total_tokens_in, self.run_log.total_tokens_out), (20, 10))

    async def test_backend_failure_becomes_an_error(self):
        session = GenerationSession(ScriptedBackend([GenerationError('boom')]), 'test-model', self.run_log)
        outcome = await session.request('p', 100)
        self.assertEqual(outcome.error, 'boom')
        self.assertIsNone(outcome.text)
        self.assertEqual(self.run_log.total_tokens_in, 0)


if __name__ == '__main__':
    unittest.main()
