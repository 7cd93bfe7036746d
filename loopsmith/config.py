"""Configuration loader for Loopsmith."""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from .errors import ConfigParseError

logger = logging.getLogger(__name__)

DEFAULT_SHELL_TIMEOUT_MS = 30 * 60 * 1000
DEFAULT_MAX_TOOL_CONCURRENCY = 10


@dataclass
class Config:
    """Loopsmith configuration."""

    provider: str
    api_key: str
    model: str
    verbose: bool = False
    dangerously_skip_permissions: bool = False
    max_tool_concurrency: int = DEFAULT_MAX_TOOL_CONCURRENCY
    shell_timeout_ms: int = DEFAULT_SHELL_TIMEOUT_MS


@dataclass
class ProjectConfig:
    """Per-project settings. `allowed_tools` holds approved tool signatures."""

    allowed_tools: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"allowed_tools": list(self.allowed_tools)}


DEFAULT_MODELS = {
    "claude": "claude-sonnet-4-5",
    "openai": "gpt-5.2",
}

# Provider-specific environment variable names
PROVIDER_ENV_VARS = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

# Pricing per 1M tokens (input, output) in USD
MODEL_PRICING = {
    "claude-opus-4-6": (15.00, 75.00),
    "claude-sonnet-4-5": (3.00, 15.00),
    "claude-haiku-4-5": (0.80, 4.00),
    "gpt-5.2": (5.00, 15.00),
    "gpt-5.1": (5.00, 15.00),
    "gpt-5-mini": (1.00, 4.00),
}


def get_config_dir() -> Path:
    """~/.loopsmith, or $LOOPSMITH_CONFIG_DIR when set."""
    override = os.getenv("LOOPSMITH_CONFIG_DIR")
    if override:
        return Path(override)
    return Path.home() / ".loopsmith"


def get_env_file() -> Path:
    return get_config_dir() / ".env"


def get_settings_file() -> Path:
    return get_config_dir() / "settings.json"


def get_projects_file() -> Path:
    return get_config_dir() / "projects.json"


def sanitize_path(path) -> str:
    """Directory-name-safe form of an absolute path."""
    return re.sub(r"[^a-zA-Z0-9]", "-", str(path))


def get_messages_dir(cwd=None) -> Path:
    """Where transcripts for a project are written."""
    project = Path(cwd or os.getcwd()).resolve()
    return get_config_dir() / "projects" / sanitize_path(project) / "messages"


def get_errors_dir(cwd=None) -> Path:
    project = Path(cwd or os.getcwd()).resolve()
    return get_config_dir() / "projects" / sanitize_path(project) / "errors"


def load_env_file(env_file=None) -> dict:
    """Read LOOPSMITH_* settings and provider keys from a .env file.

    Local ./.env wins over the global one.
    """
    result = {"api_key": None, "provider": None, "model": None, "keys": {}}

    env_files_to_check = [Path.cwd() / ".env", Path(env_file or get_env_file())]
    for path in env_files_to_check:
        if not path.is_file():
            continue
        values = dotenv_values(path)
        for key, value in values.items():
            if value is None:
                continue
            if key == "LOOPSMITH_API_KEY" and not result["api_key"]:
                result["api_key"] = value
            elif key == "LOOPSMITH_PROVIDER" and not result["provider"]:
                result["provider"] = value
            elif key == "LOOPSMITH_MODEL" and not result["model"]:
                result["model"] = value
            elif key in PROVIDER_ENV_VARS.values() and key not in result["keys"]:
                result["keys"][key] = value

    return result


def _read_json(path, default):
    path = Path(path)
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigParseError(
            f"Invalid JSON in {path}: {e.msg}", path, default_config=default
        ) from e


def load_settings_file(settings_file=None) -> dict:
    """Load settings.json. Missing file means no settings."""
    data = _read_json(settings_file or get_settings_file(), {})
    if not isinstance(data, dict):
        raise ConfigParseError(f"Settings must be a JSON object: {settings_file}", settings_file, {})
    return data


def is_placeholder_key(key) -> bool:
    """Check if key is a placeholder, not a real API key."""
    if not key:
        return True
    key_lower = key.lower().strip()
    return key_lower.startswith("paste_your") or key_lower.startswith("your-") or "placeholder" in key_lower


def load_config(
    provider_override=None,
    api_key_override=None,
    model_override=None,
    verbose=False,
    dangerously_skip_permissions=False,
) -> Config:
    """Load configuration.

    Priority for each value: CLI override > environment > .env file >
    settings.json > default.

    Raises:
        ValueError: For an unknown provider or when no API key is found
        ConfigParseError: When settings.json is not valid JSON
    """
    env_config = load_env_file()
    settings = load_settings_file()

    provider = (
        provider_override
        or os.getenv("LOOPSMITH_PROVIDER")
        or env_config["provider"]
        or settings.get("default_provider")
        or "claude"
    )
    if provider not in DEFAULT_MODELS:
        raise ValueError(
            f"Unknown provider: {provider}\nSupported: {', '.join(DEFAULT_MODELS.keys())}"
        )

    provider_env_var = PROVIDER_ENV_VARS[provider]
    candidates = [
        api_key_override,
        os.getenv(provider_env_var),
        os.getenv("LOOPSMITH_API_KEY"),
        env_config["keys"].get(provider_env_var),
        env_config["api_key"],
    ]
    api_key = next((key for key in candidates if not is_placeholder_key(key)), None)
    if not api_key:
        raise ValueError(
            f"API key is required. Set {provider_env_var} in the environment or in {get_env_file()}"
        )

    model = (
        model_override
        or os.getenv("LOOPSMITH_MODEL")
        or env_config["model"]
        or settings.get("default_model")
        or DEFAULT_MODELS[provider]
    )

    return Config(
        provider=provider,
        api_key=api_key,
        model=model,
        verbose=verbose or bool(settings.get("verbose", False)),
        dangerously_skip_permissions=dangerously_skip_permissions,
        max_tool_concurrency=int(
            settings.get("max_tool_concurrency", DEFAULT_MAX_TOOL_CONCURRENCY)
        ),
        shell_timeout_ms=int(settings.get("shell_timeout_ms", DEFAULT_SHELL_TIMEOUT_MS)),
    )


def _parse_allowed_tools(value) -> list:
    # older files stored the list as a JSON string
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Could not parse allowed_tools, ignoring it")
            return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


def get_project_config(cwd=None, projects_file=None) -> ProjectConfig:
    """Project settings for `cwd` (default: the current directory)."""
    key = str(Path(cwd or os.getcwd()).resolve())
    projects = _read_json(projects_file or get_projects_file(), {})
    entry = projects.get(key) if isinstance(projects, dict) else None
    if not isinstance(entry, dict):
        return ProjectConfig()
    return ProjectConfig(allowed_tools=_parse_allowed_tools(entry.get("allowed_tools", [])))


def save_project_config(cwd, project_config, projects_file=None):
    """Write project settings. The whole file is rewritten; last writer wins."""
    path = Path(projects_file or get_projects_file())
    key = str(Path(cwd or os.getcwd()).resolve())
    try:
        projects = _read_json(path, {})
    except ConfigParseError:
        logger.error(f"Replacing unreadable project config at {path}")
        projects = {}
    if not isinstance(projects, dict):
        projects = {}
    projects[key] = project_config.to_dict()

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(projects, indent=2))


class ProjectConfigStore:
    """load()/save() pair bound to one project, used by the permission gate."""

    def __init__(self, cwd=None, projects_file=None):
        self.cwd = str(Path(cwd or os.getcwd()).resolve())
        self.projects_file = projects_file

    def load(self) -> ProjectConfig:
        return get_project_config(self.cwd, self.projects_file)

    def save(self, project_config):
        save_project_config(self.cwd, project_config, self.projects_file)
