from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

@dataclass
class Settings:
    log_level: str
    log_dir: str
    agent_url: str
    registry_url: str
    project_path: str
    instance_id: str
    registry_host: str
    registry_port: int
    prompt_prefix: str
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".taskrelay")
        default_log_dir = str(Path(default_home) / ".logs")
        registry_port = int(os.getenv("TASKRELAY_REGISTRY_PORT", "18791"))
        return Settings(
            log_level=os.getenv("TASKRELAY_LOG_LEVEL", "info"),
            log_dir=os.getenv("TASKRELAY_LOG_DIR") or default_log_dir,
            agent_url=os.getenv("TASKRELAY_AGENT_URL", "http://127.0.0.1:3000"),
            registry_url=os.getenv("TASKRELAY_REGISTRY_URL") or f"http://127.0.0.1:{registry_port}",
            project_path=os.getenv("TASKRELAY_PROJECT_PATH") or os.getcwd(),
            instance_id=os.getenv("TASKRELAY_INSTANCE_ID", "terminal-1"),
            registry_host=os.getenv("TASKRELAY_REGISTRY_HOST", "127.0.0.1"),
            registry_port=registry_port,
            prompt_prefix=os.getenv("TASKRELAY_PROMPT_PREFIX", ""),
            clear_logs_on_launch=os.getenv("TASKRELAY_CLEAR_LOGS_ON_LAUNCH", "false").lower() in {"1", "true", "yes"},
        )
