"""
LLM provider selection by model name.

Code running inside a sandbox calls the model provider directly, so the host
only needs to decide which API key to forward and which client package to
install. Rules are checked in order; the first match wins and the last rule
is the catch-all.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .config import Settings, get_settings


@dataclass(frozen=True)
class ProviderRule:
    """Maps model names to the provider whose key and SDK the sandbox needs."""

    name: str
    matches: Callable[[str], bool]
    env_var: str
    package: str


def _prefixed(*prefixes: str) -> Callable[[str], bool]:
    return lambda model: model.lower().startswith(prefixes)


PROVIDER_RULES: List[ProviderRule] = [
    ProviderRule("openai", _prefixed("gpt", "text-", "o1", "o3"), "OPENAI_API_KEY", "openai"),
    ProviderRule("openai", lambda model: "davinci" in model.lower(), "OPENAI_API_KEY", "openai"),
    ProviderRule("anthropic", _prefixed("claude"), "ANTHROPIC_API_KEY", "anthropic"),
    # Unknown models default to OpenAI.
    ProviderRule("openai", lambda model: True, "OPENAI_API_KEY", "openai"),
]

# Extra keys forwarded to every sandbox when set on the host.
PASSTHROUGH_ENV_VARS: Tuple[str, ...] = ("EXA_API_KEY",)

# Installed in every session sandbox alongside the provider SDK.
BASE_PACKAGES: Tuple[str, ...] = ("requests", "json5")


def match_provider(model: Optional[str]) -> ProviderRule:
    model = model or "gpt-4"
    for rule in PROVIDER_RULES:
        if rule.matches(model):
            return rule
    return PROVIDER_RULES[-1]


def _setting_for(env_var: str, settings: Settings) -> Optional[str]:
    return {
        "OPENAI_API_KEY": settings.openai_api_key,
        "ANTHROPIC_API_KEY": settings.anthropic_api_key,
        "EXA_API_KEY": settings.exa_api_key,
    }.get(env_var)


def environment_for(model: Optional[str], settings: Optional[Settings] = None) -> Dict[str, str]:
    """API keys the sandbox needs for `model`; keys missing on the host are omitted."""
    settings = settings or get_settings()
    env: Dict[str, str] = {}
    rule = match_provider(model)
    for name in (rule.env_var, *PASSTHROUGH_ENV_VARS):
        value = _setting_for(name, settings)
        if value:
            env[name] = value
    return env


def packages_for(model: Optional[str]) -> List[str]:
    return [match_provider(model).package, *BASE_PACKAGES]
