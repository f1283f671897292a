import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger("site_translator")

RESULT_SUCCESS = 'success'
RESULT_FAILED = 'failed'


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TranslationRunLog:
    """
    Audit record of one language run: phases in execution order, cumulative
    token usage and the final result. Written once at the end of the run.
    """
    lang: str
    lang_name: str
    model: str
    started_at: str = field(default_factory=_utc_now)
    phases: List[Dict[str, Any]] = field(default_factory=list)
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    result: Optional[str] = None
    finished_at: Optional[str] = None
    _written_to: Optional[str] = field(default=None, repr=False)

    def add_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.total_tokens_in += input_tokens
        self.total_tokens_out += output_tokens

    def add_phase(self, phase: Dict[str, Any]) -> None:
        self.phases.append(phase)

    def finish(self, result: str) -> None:
        self.result = result
        self.finished_at = _utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lang': self.lang,
            'langName': self.lang_name,
            'model': self.model,
            'startedAt': self.started_at,
            'phases': self.phases,
            'totalTokensIn': self.total_tokens_in,
            'totalTokensOut': self.total_tokens_out,
            'result': self.result,
            'finishedAt': self.finished_at,
        }

    def write(self, logs_dir: str) -> str:
        """
        Write the log to ``logs_dir/translate-<lang>-<timestamp>.json``.

        Returns:
            The path of the written file.

        Raises:
            RuntimeError: If the log was already written.
        """
        if self._written_to:
            raise RuntimeError(f"Run log for '{self.lang}' was already written to '{self._written_to}'.")

        os.makedirs(logs_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H-%M-%S-%fZ')
        file_path = os.path.join(logs_dir, f'translate-{self.lang}-{timestamp}.json')
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(json.dumps(self.to_dict(), ensure_ascii=False, indent=2) + '\n')

        self._written_to = file_path
        logger.info(f"Run log written to '{file_path}'.")
        return file_path
