from dataclasses import dataclass


@dataclass(frozen=True)
class ChatLimits:
    model_context_window: int = 32_000
    max_output_tokens: int = 4_000
    safety_buffer: int = 500
    estimated_tool_count: int = 9
    tool_schema_tokens_per_tool: int = 200
    max_single_message_tokens: int = 2_000
    max_history_messages: int = 40
    max_message_length: int = 4_000
    max_client_history: int = 50
    rate_limit_per_minute: int = 60
    rate_limit_sweep_interval_minutes: float = 5
    rate_limit_entry_expiration_minutes: float = 10
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 2
    tool_timeout_seconds: float = 30
    max_tool_result_tokens: int = 8_000
    tool_cache_seconds: float = 60
    token_cache_max_size: int = 2_000
    max_tool_rounds: int = 10


_CONFIG_KEYS = {
    "ModelContextWindow": ("model_context_window", int),
    "MaxOutputTokens": ("max_output_tokens", int),
    "SafetyBuffer": ("safety_buffer", int),
    "EstimatedToolCount": ("estimated_tool_count", int),
    "ToolSchemaTokensPerTool": ("tool_schema_tokens_per_tool", int),
    "MaxSingleMessageTokens": ("max_single_message_tokens", int),
    "MaxHistoryMessages": ("max_history_messages", int),
    "MaxMessageLength": ("max_message_length", int),
    "MaxClientHistory": ("max_client_history", int),
    "RateLimitPerMinute": ("rate_limit_per_minute", int),
    "RateLimitSweepIntervalMinutes": ("rate_limit_sweep_interval_minutes", float),
    "RateLimitEntryExpirationMinutes": ("rate_limit_entry_expiration_minutes", float),
    "MaxRetryAttempts": ("max_retry_attempts", int),
    "RetryBaseDelaySeconds": ("retry_base_delay_seconds", float),
    "ToolTimeoutSeconds": ("tool_timeout_seconds", float),
    "MaxToolResultTokens": ("max_tool_result_tokens", int),
    "ToolCacheSeconds": ("tool_cache_seconds", float),
    "TokenCacheMaxSize": ("token_cache_max_size", int),
    "MaxToolRounds": ("max_tool_rounds", int),
}


def parse_chat_limits(config: dict) -> ChatLimits:
    overrides = {
        field_name: cast(config[key])
        for key, (field_name, cast) in _CONFIG_KEYS.items()
        if config.get(key) is not None
    }
    return ChatLimits(**overrides)
