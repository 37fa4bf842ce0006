"""
Agent Configuration

Loads the YAML agent configuration and resolves the data directory.
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "agent_config.yaml"


@dataclass
class GitConfig:
    remote: Optional[str] = None
    branch: str = "master"
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class ScheduleConfig:
    wake_time: str = "08:00"
    sleep_time: str = "19:00"
    wake_days: Union[str, List[int]] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    wake_frequency: int = 5  # minutes
    sleep_frequency: int = 0  # minutes, 0 pauses work while asleep


@dataclass
class WinRMConfig:
    username: Optional[str] = None
    password: Optional[str] = None
    transport: str = "ntlm"
    port: int = 5985
    scheme: str = "http"


@dataclass
class BroadcastConfig:
    enabled: bool = True
    host: str = "localhost"
    port: int = 8181


@dataclass
class LoggingConfig:
    level: str = "info"
    file: Optional[str] = None


@dataclass
class AgentConfig:
    """Configuration for the drift agent."""
    data_dir: Optional[str] = None
    git: GitConfig = field(default_factory=GitConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    winrm: WinRMConfig = field(default_factory=WinRMConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: Optional[str] = None) -> "AgentConfig":
        data = data or {}
        return cls(
            data_dir=data.get("data_dir"),
            git=GitConfig(**(data.get("git") or {})),
            schedule=ScheduleConfig(**(data.get("schedule") or {})),
            winrm=WinRMConfig(**(data.get("winrm") or {})),
            broadcast=BroadcastConfig(**(data.get("broadcast") or {})),
            logging=LoggingConfig(**(data.get("logging") or {})),
            config_path=config_path,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("config_path")
        return data

    def save(self, path: Optional[Union[str, Path]] = None) -> Path:
        config_path = Path(path or self.config_path or DEFAULT_CONFIG_FILE)
        with config_path.open("w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        return config_path

    def resolve_data_dir(self) -> Path:
        """
        Get the data directory, choosing and persisting a default if unset.

        The default is only written back to the configuration file once, the
        first time it is resolved.
        """
        if self.data_dir:
            return Path(self.data_dir)

        self.data_dir = str(default_data_dir())
        if self.config_path and Path(self.config_path).exists():
            try:
                with open(self.config_path, "r") as f:
                    raw = yaml.safe_load(f) or {}
                raw["data_dir"] = self.data_dir
                with open(self.config_path, "w") as f:
                    yaml.safe_dump(raw, f, default_flow_style=False, sort_keys=False)
                logger.info(f"data_dir set to: {self.data_dir} in configuration.")
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to save data_dir to config: {e}")
        return Path(self.data_dir)


def default_data_dir() -> Path:
    program_data = os.environ.get("PROGRAMDATA")
    if os.name == "nt" and program_data:
        return Path(program_data) / "drift-agent" / "data"
    return Path("/var/lib/drift-agent/data")


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_FILE) -> AgentConfig:
    """Load the agent configuration from a YAML file."""
    config_path = Path(path)
    with config_path.open() as f:
        data = yaml.safe_load(f) or {}
    return AgentConfig.from_dict(data, config_path=str(config_path.absolute()))
