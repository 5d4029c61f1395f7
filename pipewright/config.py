from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict


class JenkinsConfig(BaseModel):
    """Connection settings and endpoint templates for the Jenkins backend.

    Frozen: it is built once and handed to the adapter at construction.
    """

    model_config = ConfigDict(frozen=True)

    address: str = "http://jenkins:8080"
    user: str = ""
    token: str = ""
    timeout: float = 10.0
    retries: int = 3
    backoff_base: float = 1.5

    create_job_uri: str = "/createItem"
    update_job_uri: str = "/job/{job}/config.xml"
    stop_job_uri: str = "/job/{job}/lastBuild/stop"
    cancel_queue_item_uri: str = "/queue/cancelItem?id={id}"
    delete_build_uri: str = "/job/{job}/lastBuild/doDelete"
    crumb_uri: str = '/crumbIssuer/api/xml?xpath=concat(//crumbRequestField,":",//crumb)'
    job_build_uri: str = "/job/{job}/build"
    job_build_with_params_uri: str = "/job/{job}/buildWithParameters"
    job_info_uri: str = "/job/{job}/api/json"
    build_info_uri: str = "/job/{job}/lastBuild/api/json"
    build_log_uri: str = "/job/{job}/lastBuild/timestamps/?elapsed=HH'h'mm'm'ss's'S'ms'&appendLog"
    script_uri: str = "/scriptText"


class BackendConfig(BaseModel):
    """Execution backend settings."""

    kind: Literal["inmemory", "jenkins"] = "inmemory"
    jenkins: JenkinsConfig = JenkinsConfig()


class RedisConfig(BaseModel):
    """Configuration for the Redis notifier."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class NotifierConfig(BaseModel):
    """Resource-change notification settings."""

    kind: Literal["inmemory", "redis"] = "inmemory"
    channel: str = "pipewright:events"
    redis: RedisConfig = RedisConfig()


class PipewrightConfig(BaseModel):
    """Top-level configuration model."""

    backend: BackendConfig = BackendConfig()
    notifier: NotifierConfig = NotifierConfig()
    database_url: Optional[str] = None
    sync_interval: float = 5.0
    schedule_interval: float = 30.0
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> PipewrightConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PIPEWRIGHT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PIPEWRIGHT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PipewrightConfig(**data)
    else:
        config = PipewrightConfig()

    env_db_url = os.getenv("PIPEWRIGHT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    jenkins_overrides = {
        field: os.environ[var]
        for field, var in (
            ("address", "JENKINS_ADDRESS"),
            ("user", "JENKINS_USER"),
            ("token", "JENKINS_TOKEN"),
        )
        if os.getenv(var)
    }
    if jenkins_overrides:
        config.backend.jenkins = config.backend.jenkins.model_copy(update=jenkins_overrides)

    if os.getenv("PIPEWRIGHT_BACKEND"):
        config.backend.kind = os.environ["PIPEWRIGHT_BACKEND"]
    if os.getenv("PIPEWRIGHT_NOTIFIER"):
        config.notifier.kind = os.environ["PIPEWRIGHT_NOTIFIER"]
    return config
