"""Parse agent CLI tool configuration and build per-turn invocations."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

DEFAULT_COMMAND = "claude"
DEFAULT_LOAD_COMMAND = "/bmad:{project_type}:agents:{agent_id}"
_PROJECT_TYPES = {"bmm", "bmgd"}

# Directories GUI-launched hosts commonly miss from PATH.
_EXTRA_PATH_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "~/.local/bin",
    "~/.npm-global/bin",
)


@dataclass(frozen=True)
class CustomEndpoint:
    """Alternate model backend exposed to the agent CLI through its environment.

    Attributes:
        base_url: API base URL the CLI should talk to instead of the default.
        api_key: Credential sent to ``base_url``.
        model_name: Model identifier requested from the alternate backend.
    """
    base_url: str
    api_key: Optional[str] = None
    model_name: Optional[str] = None

    def env(self) -> dict[str, str]:
        """Translate the override into the environment variables the CLI reads."""
        out = {"ANTHROPIC_BASE_URL": self.base_url}
        if self.api_key:
            out["ANTHROPIC_AUTH_TOKEN"] = self.api_key
        if self.model_name:
            out["ANTHROPIC_MODEL"] = self.model_name
        return out


@dataclass(frozen=True)
class AgentToolSpec:
    """Normalized settings for invoking the external agent CLI.

    Attributes:
        command: Executable (plus fixed leading arguments) run for every turn.
        extra_flags: Flags appended after the stream-json output flags.
        project_type: Board methodology flavour used to render agent-load prompts.
        load_command: Template for the prompt that loads an agent persona.
        model: Optional ``--model`` value.
        custom_endpoint: Optional alternate backend translated into env vars.
    """
    command: str = DEFAULT_COMMAND
    extra_flags: tuple[str, ...] = field(default_factory=tuple)
    project_type: str = "bmm"
    load_command: str = DEFAULT_LOAD_COMMAND
    model: Optional[str] = None
    custom_endpoint: Optional[CustomEndpoint] = None


def _as_dict(value: Any) -> dict[str, Any]:
    """Return ``value`` only when it is a dictionary."""
    return value if isinstance(value, dict) else {}


def _parse_endpoint(raw: Any) -> Optional[CustomEndpoint]:
    item = _as_dict(raw)
    base_url = str(item.get("base_url") or "").strip()
    if not base_url:
        return None
    api_key = str(item.get("api_key") or "").strip() or None
    model_name = str(item.get("model_name") or "").strip() or None
    return CustomEndpoint(base_url=base_url, api_key=api_key, model_name=model_name)


def get_agent_tool_config(*, config: dict[str, Any]) -> AgentToolSpec:
    """Resolve the agent CLI settings from the runtime config's ``agents`` section.

    Invalid or missing values fall back to defaults rather than raising.

    Args:
        config (dict[str, Any]): Parsed runtime configuration dictionary.

    Returns:
        AgentToolSpec: Normalized tool settings.
    """
    agents_cfg = _as_dict(config.get("agents"))
    command = str(agents_cfg.get("command") or DEFAULT_COMMAND).strip() or DEFAULT_COMMAND
    raw_flags = agents_cfg.get("extra_flags")
    if isinstance(raw_flags, str):
        extra_flags = tuple(shlex.split(raw_flags))
    elif isinstance(raw_flags, list):
        extra_flags = tuple(str(flag) for flag in raw_flags if str(flag).strip())
    else:
        extra_flags = ()
    project_type = str(agents_cfg.get("project_type") or "bmm").strip().lower()
    if project_type not in _PROJECT_TYPES:
        project_type = "bmm"
    load_command = str(agents_cfg.get("load_command") or DEFAULT_LOAD_COMMAND)
    model = str(agents_cfg.get("model") or "").strip() or None
    return AgentToolSpec(
        command=command,
        extra_flags=extra_flags,
        project_type=project_type,
        load_command=load_command,
        model=model,
        custom_endpoint=_parse_endpoint(agents_cfg.get("custom_endpoint")),
    )


def render_load_prompt(spec: AgentToolSpec, agent_id: str) -> str:
    """Render the prompt that loads ``agent_id``'s persona for a fresh conversation."""
    return spec.load_command.format(project_type=spec.project_type, agent_id=agent_id)


def build_args(spec: AgentToolSpec, prompt: str, continuity_id: Optional[str] = None) -> list[str]:
    """Build the argv for one request/response turn.

    The CLI is invoked as
    ``<command> --output-format stream-json --print --verbose [flags] [--resume ID] -p PROMPT``.
    """
    argv = shlex.split(spec.command)
    argv += ["--output-format", "stream-json", "--print", "--verbose"]
    argv += list(spec.extra_flags)
    if spec.model:
        argv += ["--model", spec.model]
    if continuity_id:
        argv += ["--resume", continuity_id]
    argv += ["-p", prompt]
    return argv


def build_env(spec: AgentToolSpec, base_env: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Build the child environment: augmented ``PATH`` plus endpoint overrides."""
    env = dict(os.environ if base_env is None else base_env)
    current = [part for part in env.get("PATH", "").split(os.pathsep) if part]
    for raw_dir in _EXTRA_PATH_DIRS:
        directory = str(Path(raw_dir).expanduser())
        if directory not in current:
            current.append(directory)
    env["PATH"] = os.pathsep.join(current)
    if spec.custom_endpoint is not None:
        env.update(spec.custom_endpoint.env())
    return env
