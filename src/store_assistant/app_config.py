from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from store_assistant.chat_config import ChatLimits, parse_chat_limits

DEFAULT_OPENAI_ENDPOINT = "https://llm.chutes.ai/v1"


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    provider_base_url: str | None
    store_api_base_url: str | None
    store_api_token: str | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    endpoint: str | None
    temperature: float | None
    limits: ChatLimits
    memory_enabled: bool
    memory_db_path: str
    memory_retention_days: int
    memory_max_messages_per_conversation: int
    user_id: str
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _to_optional_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def parse_app_config(config: dict) -> AppConfig:
    provider_name = str(config.get("Provider", "openai")).strip().lower()
    default_endpoint = DEFAULT_OPENAI_ENDPOINT if provider_name == "openai" else None
    return AppConfig(
        provider_name=provider_name,
        model=config.get("Model", "openai/gpt-oss-120b"),
        endpoint=str(config.get("Endpoint", "")).strip() or default_endpoint,
        temperature=_to_optional_float(config.get("Temperature")),
        limits=parse_chat_limits(config),
        memory_enabled=_to_bool(config.get("MemoryEnabled", True), default=True),
        memory_db_path=str(config.get("MemoryDbPath", ".store_assistant/conversations.db")),
        memory_retention_days=int(config.get("MemoryRetentionDays", 30)),
        memory_max_messages_per_conversation=int(config.get("MemoryMaxMessagesPerConversation", 1000)),
        user_id=str(config.get("UserId", "local")).strip() or "local",
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


# provider name -> (api key variable, base url variable)
_PROVIDER_ENV = {
    "openai": ("OPENAI_API_KEY", "OPENAI_BASE_URL"),
    "anthropic": ("ANTHROPIC_API_KEY", None),
}


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    key_var, url_var = _PROVIDER_ENV.get(provider_name, _PROVIDER_ENV["openai"])
    return RuntimeEnv(
        provider_api_key=os.environ.get(key_var, ""),
        provider_env_var=key_var,
        provider_base_url=(os.environ.get(url_var) or None) if url_var else None,
        store_api_base_url=os.environ.get("STORE_API_BASE_URL") or None,
        store_api_token=os.environ.get("STORE_API_TOKEN") or None,
    )
