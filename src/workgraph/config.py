"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    workgraph_dir: Path = field(default_factory=lambda: Path.cwd() / ".workgraph")
    default_executor: str = "claude"
    default_model: str | None = None
    heartbeat_timeout_minutes: int = 5
    kill_wait_seconds: int = 5
    agent_interval: int = 10
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if wg_dir := os.environ.get("WG_DIR"):
            config.workgraph_dir = Path(wg_dir)

        if executor := os.environ.get("WG_EXECUTOR"):
            config.default_executor = executor

        config.default_model = os.environ.get("WG_MODEL")

        if timeout := os.environ.get("WG_HEARTBEAT_TIMEOUT"):
            config.heartbeat_timeout_minutes = int(timeout)

        if wait := os.environ.get("WG_KILL_WAIT"):
            config.kill_wait_seconds = int(wait)

        if interval := os.environ.get("WG_AGENT_INTERVAL"):
            config.agent_interval = int(interval)

        if level := os.environ.get("WG_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
