import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so E2B and LLM API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    e2b_api_key: Optional[str]
    openai_api_key: Optional[str]
    anthropic_api_key: Optional[str]
    exa_api_key: Optional[str]
    db_path: str = "./data/agent_runtime.db"
    sandbox_timeout_seconds: int = 300
    session_sandbox_timeout_seconds: int = 3600
    log_level: str = "INFO"

    service_name: str = "agent-runtime"

    @property
    def simulation_mode(self) -> bool:
        """True when no remote sandbox credentials are configured."""
        return not self.e2b_api_key


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Defaults only. `get_settings` re-reads the environment on every call so
    tests can flip credentials on and off with monkeypatch.
    """

    return Settings(
        e2b_api_key=None,
        openai_api_key=None,
        anthropic_api_key=None,
        exa_api_key=None,
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
    """Return Settings built from the *current* environment."""

    base = _base_settings()
    return Settings(
        e2b_api_key=os.getenv("E2B_API_KEY") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        exa_api_key=os.getenv("EXA_API_KEY") or None,
        db_path=os.getenv("DB_PATH") or base.db_path,
        sandbox_timeout_seconds=_int_env("SANDBOX_TIMEOUT_SECONDS", base.sandbox_timeout_seconds),
        session_sandbox_timeout_seconds=_int_env(
            "SESSION_SANDBOX_TIMEOUT_SECONDS", base.session_sandbox_timeout_seconds
        ),
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        service_name=base.service_name,
    )
