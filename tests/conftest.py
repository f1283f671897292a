import os
from typing import Callable, List, Optional, Sequence, Union
from unittest.mock import patch

import pytest

from site_translator.generation_backend import GenerationBackend, GenerationError, GenerationResult, TokenUsage
from site_translator.run_log import TranslationRunLog

Reply = Union[str, GenerationResult, Exception]


class ScriptedBackend(GenerationBackend):
    """
    Backend fake that answers from a script.

    ``replies`` is either a list consumed in order or a callable receiving the
    prompt. A string reply becomes a normal result with 10/5 token usage, a
    ``GenerationResult`` is returned as is and an exception is raised.
    """

    def __init__(self, replies: Union[Sequence[Reply], Callable[[str], Reply]]):
        self.replies = replies if callable(replies) else list(replies)
        self.prompts: List[str] = []
        self.models: List[str] = []

    async def generate(self, model: str, prompt: str, max_output_tokens: int) -> GenerationResult:
        self.prompts.append(prompt)
        self.models.append(model)
        if callable(self.replies):
            reply = self.replies(prompt)
        else:
            if not self.replies:
                raise GenerationError("No scripted reply left")
            reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, GenerationResult):
            return reply
        return GenerationResult(text=reply, usage=TokenUsage(10, 5))


def truncated(text: str = '') -> GenerationResult:
    return GenerationResult(text=text, usage=TokenUsage(10, 5), truncated=True)


@pytest.fixture
def run_log() -> TranslationRunLog:
    return TranslationRunLog(lang='pl', lang_name='Polish', model='test-model')


@pytest.fixture
def scripted_backend() -> Callable[..., ScriptedBackend]:
    return ScriptedBackend


@pytest.fixture
def locales_dir(tmp_path) -> str:
    path = tmp_path / 'locales'
    path.mkdir()
    return str(path)


@pytest.fixture
def logs_dir(tmp_path) -> str:
    return os.path.join(str(tmp_path), 'logs')


def first_line_after(prompt: str, marker: str) -> Optional[str]:
    """Return the first non-empty line following ``marker`` in a prompt."""
    _, _, rest = prompt.partition(marker)
    for line in rest.splitlines():
        if line.strip():
            return line.strip()
    return None


@pytest.fixture(autouse=True)
def offline_token_counting():
    """Count tokens by whitespace so tiktoken never fetches encoding data during tests."""
    with patch('site_translator.prompts.count_tokens', side_effect=lambda text, model_name='gpt-4o': len(text.split())):
        yield
