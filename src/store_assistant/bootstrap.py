from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from store_assistant.app_config import AppConfig, RuntimeEnv
from store_assistant.logging_config import setup_logging
from store_assistant.memory import ConversationDatabase, ConversationRepository, prune_conversations
from store_assistant.orchestrator import ChatOrchestrator
from store_assistant.provider import create_provider
from store_assistant.rate_limiter import RateLimiter
from store_assistant.tokens import TokenCounter
from store_assistant.tool import Tool
from store_assistant.tool_registry import ToolRegistry, get_all
from store_assistant.tools.store_backend import HttpStoreBackend


@dataclass
class AppRuntime:
    orchestrator: ChatOrchestrator
    repository: ConversationRepository | None
    database: ConversationDatabase | None
    store_backend: HttpStoreBackend | None
    tools: list[Tool]
    log_descriptions: list[str]

    async def close(self) -> None:
        if self.store_backend is not None:
            await self.store_backend.close()
        if self.database is not None:
            self.database.close()


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)
    limits = app.limits

    store_backend: HttpStoreBackend | None = None
    if env.store_api_base_url:
        store_backend = HttpStoreBackend(env.store_api_base_url, token=env.store_api_token)
    else:
        logger.warning("STORE_API_BASE_URL is not set; store tools are disabled")

    tools = get_all(store_backend)
    registry = ToolRegistry(tools)

    token_counter = TokenCounter(
        cache_size=limits.token_cache_max_size,
        tokens_per_tool=limits.tool_schema_tokens_per_tool,
    )
    provider = create_provider(
        app.provider_name,
        env.provider_api_key,
        model=app.model,
        base_url=env.provider_base_url or app.endpoint,
    )
    rate_limiter = RateLimiter(
        limits.rate_limit_per_minute,
        sweep_interval_minutes=limits.rate_limit_sweep_interval_minutes,
        expiration_minutes=limits.rate_limit_entry_expiration_minutes,
    )

    database: ConversationDatabase | None = None
    repository: ConversationRepository | None = None
    if app.memory_enabled:
        db_path = Path(app.memory_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        database = ConversationDatabase(str(db_path))
        repository = ConversationRepository(database)
        prune_conversations(
            database,
            retention_days=app.memory_retention_days,
            max_messages_per_conversation=app.memory_max_messages_per_conversation,
        )

    orchestrator = ChatOrchestrator(
        provider=provider,
        registry=registry,
        token_counter=token_counter,
        limits=limits,
        rate_limiter=rate_limiter,
        store=repository,
        temperature=app.temperature,
    )
    logger.info(
        f"Runtime ready: provider={app.provider_name}, model={app.model}, tools={len(registry)}, "
        f"memory={'on' if repository else 'off'}"
    )

    return AppRuntime(
        orchestrator=orchestrator,
        repository=repository,
        database=database,
        store_backend=store_backend,
        tools=tools,
        log_descriptions=log_descriptions,
    )
