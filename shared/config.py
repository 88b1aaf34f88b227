"""
TaskRelay - Configuration

Settings come from environment variables (a .env file is loaded by the
entry points). Agents are configured either inline as JSON or in a JSON file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError
from .schemas import AgentConfig

logger = logging.getLogger(__name__)

AGENTS_ENV_VAR = "TASKRELAY_AGENTS"
AGENTS_FILE_ENV_VAR = "TASKRELAY_AGENTS_FILE"
DEFAULT_AGENT_FILES = ("taskrelay.agents.json", "agents.json")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_agents(raw: Any, source: str = "config") -> List[AgentConfig]:
    """
    Validate a list of agent definitions.

    Accepts either a list or an object with an "agents" list.
    """
    if isinstance(raw, dict):
        raw = raw.get("agents", [])
    if not isinstance(raw, list):
        raise ConfigurationError(f"{source} must contain a list of agents", config_field="agents")

    try:
        agents = [AgentConfig.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ConfigurationError(f"invalid agent definition in {source}: {e}", config_field="agents") from e

    validate_agents(agents)
    return agents


def validate_agents(agents: List[AgentConfig]) -> None:
    """Reject duplicate agent ids"""
    seen = set()
    for agent in agents:
        if agent.id in seen:
            raise ConfigurationError(f"duplicate agent id '{agent.id}'", config_field="agents")
        seen.add(agent.id)


def load_agents_from_env() -> List[AgentConfig]:
    raw = os.getenv(AGENTS_ENV_VAR)
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{AGENTS_ENV_VAR} is not valid JSON: {e}", config_field=AGENTS_ENV_VAR) from e
    return parse_agents(data, source=AGENTS_ENV_VAR)


def load_agents_from_file(path: Optional[str] = None) -> List[AgentConfig]:
    """
    Load agents from a JSON file.

    Args:
        path: Explicit file path; when omitted the default file names are searched
              in the current directory

    Returns:
        List of agents, empty if no file was found
    """
    candidates = [Path(path)] if path else [Path(name) for name in DEFAULT_AGENT_FILES]

    for candidate in candidates:
        if not candidate.is_file():
            continue
        try:
            data = json.loads(candidate.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{candidate} is not valid JSON: {e}", config_field="agents_file") from e
        logger.info(f"Loaded agent configuration from {candidate}")
        return parse_agents(data, source=str(candidate))

    if path:
        raise ConfigurationError(f"agents file not found: {path}", config_field="agents_file")
    return []


def load_agents() -> List[AgentConfig]:
    """Environment first, then file"""
    agents = load_agents_from_env()
    if agents:
        return agents
    return load_agents_from_file(os.getenv(AGENTS_FILE_ENV_VAR))


class OrchestratorSettings(BaseModel):
    """Runtime settings for the orchestration service"""

    agents: List[AgentConfig] = []
    webhook_secret: Optional[str] = None
    callback_url_template: Optional[str] = None
    default_timeout: float = 30.0
    max_clarifications: int = 3
    pending_dir: Optional[str] = None
    cleanup_on_finish: bool = False

    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_vhost: str = "/"
    publish_progress: bool = False
    consume_notifications: bool = False

    log_level: str = "INFO"
    log_dir: str = "./logs"

    @classmethod
    def from_env(cls, load_agent_config: bool = True) -> "OrchestratorSettings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If a value is malformed, or agent loading is
                requested and no agent is configured
        """
        agents = []
        if load_agent_config:
            agents = load_agents()
            if not agents:
                raise ConfigurationError(
                    f"no agents configured; set {AGENTS_ENV_VAR} or {AGENTS_FILE_ENV_VAR}",
                    config_field="agents"
                )

        try:
            return cls(
                agents=agents,
                webhook_secret=os.getenv("TASKRELAY_WEBHOOK_SECRET") or None,
                callback_url_template=os.getenv("TASKRELAY_CALLBACK_URL_TEMPLATE") or None,
                default_timeout=float(os.getenv("TASKRELAY_DEFAULT_TIMEOUT", "30")),
                max_clarifications=int(os.getenv("TASKRELAY_MAX_CLARIFICATIONS", "3")),
                pending_dir=os.getenv("TASKRELAY_PENDING_DIR") or None,
                cleanup_on_finish=_env_bool("TASKRELAY_CLEANUP_ON_FINISH"),
                rabbitmq_host=os.getenv("RABBITMQ_HOST", "localhost"),
                rabbitmq_port=int(os.getenv("RABBITMQ_PORT", "5672")),
                rabbitmq_user=os.getenv("RABBITMQ_USER", "guest"),
                rabbitmq_password=os.getenv("RABBITMQ_PASSWORD", "guest"),
                rabbitmq_vhost=os.getenv("RABBITMQ_VHOST", "/"),
                publish_progress=_env_bool("TASKRELAY_PUBLISH_PROGRESS"),
                consume_notifications=_env_bool("TASKRELAY_CONSUME_NOTIFICATIONS"),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
                log_dir=os.getenv("LOG_DIR", "./logs"),
            )
        except ValueError as e:
            # int()/float() on a malformed variable
            raise ConfigurationError(str(e)) from e

    @property
    def uses_rabbitmq(self) -> bool:
        return self.publish_progress or self.consume_notifications
