"""OpenAI client configuration for the expansion intelligence services."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from openai import OpenAI

load_dotenv()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "120") or 120)


@lru_cache(maxsize=1)
def get_openai_client() -> Optional[OpenAI]:
    """Instantiate the OpenAI client if an API key is configured."""
    if not OPENAI_API_KEY:
        return None
    # Retries are handled by the timeout/retry service, not by the SDK.
    return OpenAI(api_key=OPENAI_API_KEY, max_retries=0, timeout=OPENAI_TIMEOUT_SECONDS)


__all__ = ["get_openai_client", "OPENAI_API_KEY"]
