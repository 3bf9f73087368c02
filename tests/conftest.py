import json
import types
from typing import Any, Callable, Dict, List, Optional

import pytest

from app.services.ai_monitoring_service import PerformanceMonitor
from app.services.completion_service import CompletionService
from app.services.concurrency_service import ConcurrencyManager
from app.services.retry_service import RetryPolicy, TimeoutRetryService
from app.services.seed_manager import SeedManager


def chat_response(content: Any, *, prompt_tokens: int = 120, completion_tokens: int = 80, model: str = "gpt-5-mini"):
    if not isinstance(content, str):
        content = json.dumps(content)
    return {
        "id": "chatcmpl-test",
        "model": model,
        "choices": [
            {
                "index": 0,
                "finish_reason": "stop",
                "message": {"role": "assistant", "content": content},
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


class FakeCompletions:
    """Returns queued responses; a callable entry receives the request kwargs."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(item) and not isinstance(item, type):
            item = item(kwargs)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeOpenAI:
    def __init__(self, *responses: Any):
        self.completions = FakeCompletions(list(responses) or [chat_response("ok")])
        self.chat = types.SimpleNamespace(completions=self.completions)


async def _no_sleep(_seconds: float) -> None:
    return None


def make_completion_service(client: Optional[Any], **overrides: Any) -> CompletionService:
    options: Dict[str, Any] = {
        "concurrency": ConcurrencyManager(max_concurrent=4, rate_limit_per_minute=1000, queue_timeout=5),
        "retry": TimeoutRetryService(RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05), sleep=_no_sleep),
        "seeds": SeedManager(base_seed=None, rotation_hours=None),
        "monitor": PerformanceMonitor(),
        "usage_sink": None,
    }
    options.update(overrides)
    return CompletionService(client, client_factory=lambda: None, **options)


@pytest.fixture
def completion_factory() -> Callable[..., CompletionService]:
    return make_completion_service
