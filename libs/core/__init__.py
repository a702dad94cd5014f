__all__ = [
    "models",
    "errors",
    "config",
    "cancellation",
    "logging",
    "prompts",
    "schema_sanitizer",
    "token_exchange",
    "plugin_loader",
    "result_filter",
    "llm_provider",
    "orchestrator",
    "day_planner",
]
