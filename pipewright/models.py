"""Pipeline definition models."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import DefinitionError


class Conditions(BaseModel):
    """Boolean gate evaluated against run-scoped variables.

    ``all`` is a conjunction and ``any`` a disjunction of ``key=value`` or
    ``key!=value`` predicates. When both are given only ``all`` is used.
    """

    all: List[str] = Field(default_factory=list)
    any: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.all and not self.any


class StepType(str, Enum):
    TASK = "task"
    BUILD = "build"
    SCM = "scm"
    UPGRADE_SERVICE = "upgradeService"
    UPGRADE_STACK = "upgradeStack"
    UPGRADE_CATALOG = "upgradeCatalog"


class Step(BaseModel):
    """Smallest unit of work in a pipeline."""

    name: str
    type: StepType = StepType.TASK

    # task
    image: str = ""
    entrypoint: str = ""
    args: str = ""
    shell_script: str = ""
    env: List[str] = Field(default_factory=list)
    timeout: int = 0
    is_service: bool = False
    alias: str = ""
    services: List[str] = Field(default_factory=list)

    # scm
    repository: str = ""
    branch: str = ""
    git_user: str = ""

    # build
    target_image: str = ""
    dockerfile_path: str = ""
    build_path: str = ""
    push: bool = False

    # upgrade steps and anything else backend specific
    parameters: Dict[str, Any] = Field(default_factory=dict)

    conditions: Optional[Conditions] = None


class Stage(BaseModel):
    """Named group of steps run sequentially or in parallel."""

    name: str
    steps: List[Step] = Field(default_factory=list)
    parallel: bool = False
    need_approve: bool = False
    conditions: Optional[Conditions] = None


class CronTrigger(BaseModel):
    spec: str = ""
    timezone: str = "UTC"


class Pipeline(BaseModel):
    """Declarative pipeline definition plus its run counters."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    stages: List[Stage] = Field(default_factory=list)
    parameters: List[str] = Field(default_factory=list)
    cron_trigger: CronTrigger = Field(default_factory=CronTrigger)
    is_activate: bool = False
    keep_workspace: bool = False
    webhook_token: Optional[str] = None

    run_count: int = 0
    last_run_id: str = ""
    last_run_status: str = ""
    last_run_time: int = 0
    next_run_time: int = 0

    def parameter_map(self) -> Dict[str, str]:
        """Return ``K=V`` parameters as a dict, ignoring malformed entries."""
        params: Dict[str, str] = {}
        for entry in self.parameters:
            key, sep, value = entry.partition("=")
            if not sep:
                continue
            params[key] = value
        return params

    def validate_definition(self) -> None:
        """Raise ``DefinitionError`` if the pipeline cannot be run."""
        if not self.stages:
            raise DefinitionError(f"pipeline '{self.name}' has no stage to run")
        for stage in self.stages:
            if not stage.steps:
                raise DefinitionError(f"stage '{stage.name}' has no steps")
            scm_steps = [s for s in stage.steps if s.type == StepType.SCM]
            if scm_steps and len(stage.steps) > 1:
                raise DefinitionError(
                    f"stage '{stage.name}': a source checkout step must be the only step of its stage"
                )
