"""Agent configuration utilities.

Provides functions for loading LLM configuration from environment variables.
"""

import os
from pathlib import Path

import httpx
from dotenv import load_dotenv
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

# Check if we're in production
is_production = os.getenv("ENVIRONMENT") == "production"

if not is_production:
    # Development: prioritize .env file
    project_root = Path(__file__).resolve().parent.parent.parent
    dotenv_path = project_root / ".env"
    load_dotenv(dotenv_path, override=True)
else:
    # Production: use cloud platform env vars only
    load_dotenv()


def get_model_name() -> str:
    """Return the configured chat model name (LLM_CHOICE, default gpt-4o-mini)."""
    return os.getenv("LLM_CHOICE") or "gpt-4o-mini"


def get_model(timeout_seconds: float | None = None) -> OpenAIChatModel:
    """Get the configured LLM model for the chat and title agents.

    Reads configuration from environment variables:
    - LLM_CHOICE: Model name (default: gpt-4o-mini)
    - LLM_BASE_URL: API base URL (default: https://api.openai.com/v1)
    - LLM_API_KEY: API key (default: ollama for local testing)

    Args:
        timeout_seconds: Per-request HTTP timeout. Defaults to
            GENERATION_TIMEOUT_SECONDS, then 60 seconds.

    Returns:
        OpenAIChatModel configured with environment settings.
    """
    llm = get_model_name()
    base_url = os.getenv("LLM_BASE_URL") or "https://api.openai.com/v1"
    api_key = os.getenv("LLM_API_KEY") or "ollama"
    timeout = timeout_seconds or float(os.getenv("GENERATION_TIMEOUT_SECONDS", "60"))

    provider = OpenAIProvider(
        base_url=base_url,
        api_key=api_key,
        http_client=httpx.AsyncClient(timeout=httpx.Timeout(timeout)),
    )
    return OpenAIChatModel(llm, provider=provider)
