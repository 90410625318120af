import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .models import RunConfig

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    app_name: str
    provider_name: str
    openrouter_api_key: Optional[str]
    openrouter_model: str
    agents_file: Optional[str]
    session_db_path: str = "./data/sessions.db"
    max_llm_calls: int = 500
    streaming_mode: str = "none"

    service_name: str = "agent-relay"


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """Defaults used when a variable is unset."""
    return Settings(
        app_name="relay",
        provider_name="echo",
        openrouter_api_key=None,
        openrouter_model="openai/gpt-4o-mini",
        agents_file=None,
        session_db_path="./data/sessions.db",
        max_llm_calls=500,
        streaming_mode="none",
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """

    base = _base_settings()
    provider_name = (os.getenv("PROVIDER") or base.provider_name).lower()
    streaming_mode = (os.getenv("STREAMING_MODE") or base.streaming_mode).lower()
    session_db_path = os.getenv("SESSION_DB_PATH") or os.getenv("DB_PATH") or base.session_db_path

    return Settings(
        app_name=os.getenv("RELAY_APP_NAME") or base.app_name,
        provider_name=provider_name,
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        openrouter_model=os.getenv("OPENROUTER_MODEL") or base.openrouter_model,
        agents_file=os.getenv("AGENTS_FILE") or None,
        session_db_path=session_db_path,
        max_llm_calls=_int_env("MAX_LLM_CALLS", base.max_llm_calls),
        streaming_mode=streaming_mode if streaming_mode in {"none", "sse"} else base.streaming_mode,
        service_name=base.service_name,
    )


def default_run_config() -> RunConfig:
    """RunConfig derived from the current settings."""
    settings = get_settings()
    return RunConfig(
        streaming_mode=settings.streaming_mode,
        max_llm_calls=settings.max_llm_calls,
    )
