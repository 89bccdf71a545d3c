#deploy_engine\executor\config.py
from dataclasses import dataclass


@dataclass(frozen=True)
class BackgroundTaskConfig:
    max_workers: int = 4
    thread_name_prefix: str = "deploy-engine"
