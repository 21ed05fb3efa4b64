"""Agent CLI tool configuration."""

from .config import AgentToolSpec, CustomEndpoint, build_args, build_env, get_agent_tool_config, render_load_prompt

__all__ = [
    "AgentToolSpec",
    "CustomEndpoint",
    "build_args",
    "build_env",
    "get_agent_tool_config",
    "render_load_prompt",
]
