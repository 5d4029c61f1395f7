"""Jenkins execution backend.

Each stage of an activity becomes one freestyle job whose shell builders are
the stage's steps in declaration order, so the job's timestamped console log
is exactly what ``LogSegmenter`` splits back into steps.
"""

from __future__ import annotations

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import requests

from ..activity import Status
from ..errors import BackendStateError, BackendTransientError
from ..models import Step, StepType
from ..utils.retry import call_with_retries
from .base import BaseBackend, InfoSnapshot, UnitRef, UnitResult, UnitState, unit_ref

if TYPE_CHECKING:
    from ..activity import Activity
    from ..config import JenkinsConfig

logger = logging.getLogger(__name__)

SCRIPT_SKEL = """import hudson.util.RemotingDiagnostics;
node = "{node}"
cmd = "def proc = ['bash', '-c', '{command}'].execute();proc.waitFor();println proc.in.text;"
for (slave in hudson.model.Hudson.instance.slaves) {{
  if(slave.name==node){{
    println RemotingDiagnostics.executeGroovy(cmd, slave.getChannel());
  }}
}}
if(node == "master"){{
  def proc = ['bash', '-c', '{command}'].execute(); proc.waitFor(); println proc.in.text
}}
"""

ACTIVE_NODES_SCRIPT = """for (slave in hudson.model.Hudson.instance.slaves) {
  if (!slave.getComputer().isOffline()){
    println slave.name;
  }
}
"""

_RESULTS = {
    "SUCCESS": UnitResult.SUCCESS,
    "FAILURE": UnitResult.FAILURE,
    "ABORTED": UnitResult.ABORTED,
}

_QUEUE_ITEM = re.compile(r"/queue/item/(\d+)/?$")


def default_command(activity: "Activity", step: Step) -> str:
    """Minimal shell body for a step.

    Full command generation for every step type is left to a custom
    ``command_builder``.
    """
    lines = ["set +x"]
    if step.type == StepType.SCM:
        lines.append("cat>.ci.env<<CI_EOF")
        lines.extend(f"{k}={v}" for k, v in sorted(activity.env_vars.items()))
        lines.append("CI_EOF")
        return "\n".join(lines)
    if step.shell_script:
        lines.append("set -xe")
        lines.append(step.shell_script)
    elif step.image:
        entrypoint = f" --entrypoint {step.entrypoint}" if step.entrypoint else ""
        env = "".join(f" -e {e}" for e in step.env)
        lines.append(
            f"docker run --rm -l activityid={activity.id}{env}{entrypoint} {step.image} {step.args}".rstrip()
        )
    return "\n".join(lines)


class JenkinsBackend(BaseBackend):
    """Drive Jenkins over its REST and script-console endpoints."""

    stage_scoped_units = True

    def __init__(
        self,
        config: "JenkinsConfig",
        command_builder: Optional[Callable[["Activity", Step], str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self._command_builder = command_builder or default_command
        self._session = session or requests.Session()
        self._crumb: Optional[Dict[str, str]] = None

    # ------------------------------------------------------------------
    # HTTP helpers
    def _url(self, template: str, **kwargs: Any) -> str:
        return self.config.address.rstrip("/") + template.format(**kwargs)

    def _fetch_crumb(self) -> Dict[str, str]:
        if self._crumb is None:
            resp = self._session.get(
                self._url(self.config.crumb_uri),
                auth=(self.config.user, self.config.token),
                timeout=self.config.timeout,
            )
            resp.raise_for_status()
            name, _, value = resp.text.partition(":")
            self._crumb = {name: value} if value else {}
        return self._crumb

    def _request_sync(self, method: str, template: str, **kwargs: Any) -> requests.Response:
        params = kwargs.pop("url_params", {})
        headers = kwargs.pop("headers", {})
        try:
            if method == "POST":
                headers.update(self._fetch_crumb())
            resp = self._session.request(
                method,
                self._url(template, **params),
                auth=(self.config.user, self.config.token),
                timeout=self.config.timeout,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise BackendTransientError(f"{method} {template} failed: {exc}") from exc
        if resp.status_code >= 500:
            raise BackendTransientError(f"{method} {template} returned {resp.status_code}")
        return resp

    async def _request(self, method: str, template: str, **kwargs: Any) -> requests.Response:
        async def attempt() -> requests.Response:
            return await asyncio.to_thread(self._request_sync, method, template, **dict(kwargs))

        return await call_with_retries(
            attempt,
            attempts=self.config.retries,
            retry_on=(BackendTransientError,),
            backoff_base=self.config.backoff_base,
        )

    @staticmethod
    def _ensure_ok(resp: requests.Response, action: str) -> None:
        if resp.status_code >= 400:
            raise BackendStateError(f"{action} failed with {resp.status_code}: {resp.text[:200]}")

    @staticmethod
    def _json(resp: requests.Response, action: str) -> Dict[str, Any]:
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendStateError(f"{action} returned invalid JSON") from exc

    @staticmethod
    def job_name(ref: UnitRef) -> str:
        return str(ref.stage_ref())

    # ------------------------------------------------------------------
    # Job descriptors
    def job_config(self, activity: "Activity", stage_ordinal: int) -> bytes:
        """Freestyle job for one stage. Steps already marked Skip get no builder."""
        skipped = {s.ordinal for s in activity.stages[stage_ordinal].steps if s.status == Status.SKIP}
        steps = [
            step
            for ordinal, step in enumerate(activity.pipeline.stages[stage_ordinal].steps)
            if ordinal not in skipped
        ]
        project = ET.Element("project")
        ET.SubElement(project, "assignedNode").text = activity.node_name
        ET.SubElement(project, "canRoam").text = "false"
        ET.SubElement(project, "disabled").text = "false"
        ET.SubElement(project, "customWorkspace").text = f"${{JENKINS_HOME}}/workspace/{activity.id}"

        scm_steps = [s for s in steps if s.type == StepType.SCM]
        if scm_steps:
            scm_step = scm_steps[0]
            scm = ET.SubElement(project, "scm", {"class": "hudson.plugins.git.GitSCM", "plugin": "git"})
            remotes = ET.SubElement(scm, "userRemoteConfigs")
            remote = ET.SubElement(remotes, "hudson.plugins.git.UserRemoteConfig")
            ET.SubElement(remote, "url").text = scm_step.repository
            ET.SubElement(remote, "credentialsId").text = scm_step.git_user
            branches = ET.SubElement(scm, "branches")
            spec = ET.SubElement(branches, "hudson.plugins.git.BranchSpec")
            branch = scm_step.branch
            if stage_ordinal == 0 and activity.commit_info:
                branch = activity.commit_info
            ET.SubElement(spec, "name").text = branch
        else:
            ET.SubElement(project, "scm", {"class": "hudson.scm.NullSCM"})

        builders = ET.SubElement(project, "builders")
        for step in steps:
            shell = ET.SubElement(builders, "hudson.tasks.Shell")
            ET.SubElement(shell, "command").text = self._command_builder(activity, step)

        wrappers = ET.SubElement(project, "buildWrappers")
        ET.SubElement(wrappers, "hudson.plugins.timestamper.TimestamperBuildWrapper", {"plugin": "timestamper"})
        timeout = max((s.timeout for s in steps), default=0)
        if timeout > 0:
            wrapper = ET.SubElement(
                wrappers, "hudson.plugins.build__timeout.BuildTimeoutWrapper", {"plugin": "build-timeout"}
            )
            strategy = ET.SubElement(
                wrapper,
                "strategy",
                {"class": "hudson.plugins.build_timeout.impl.AbsoluteTimeOutStrategy"},
            )
            ET.SubElement(strategy, "timeoutMinutes").text = str(timeout)
        return ET.tostring(project, encoding="utf-8")

    # ------------------------------------------------------------------
    # Backend API
    async def prepare(self, activity: "Activity", stage_ordinal: int, step_ordinal: int) -> None:
        ref = unit_ref(activity, stage_ordinal, step_ordinal)
        job = self.job_name(ref)
        body = self.job_config(activity, stage_ordinal)
        headers = {"Content-Type": "application/xml"}
        info = await self._request("GET", self.config.job_info_uri, url_params={"job": job})
        if info.status_code == 404:
            logger.debug(f"creating jenkins job {job}")
            resp = await self._request(
                "POST", self.config.create_job_uri, params={"name": job}, data=body, headers=headers
            )
            self._ensure_ok(resp, f"create job {job}")
        else:
            logger.debug(f"updating jenkins job {job}")
            resp = await self._request(
                "POST", self.config.update_job_uri, url_params={"job": job}, data=body, headers=headers
            )
            self._ensure_ok(resp, f"update job {job}")

    async def trigger(self, ref: UnitRef, params: Optional[Dict[str, str]] = None) -> str:
        job = self.job_name(ref)
        resp = await self._request("GET", self.config.job_info_uri, url_params={"job": job})
        self._ensure_ok(resp, f"get job {job}")
        info = self._json(resp, f"get job {job}")
        # Every step of a stage shares this job; only the first trigger of a
        # run sequence actually starts it.
        if info.get("inQueue"):
            return self._queue_id(info, job)
        if info.get("lastBuild"):
            return str(info["lastBuild"].get("number", ""))

        if params:
            resp = await self._request(
                "POST", self.config.job_build_with_params_uri, url_params={"job": job}, params=params
            )
        else:
            resp = await self._request("POST", self.config.job_build_uri, url_params={"job": job})
        self._ensure_ok(resp, f"build job {job}")
        match = _QUEUE_ITEM.search(resp.headers.get("Location", ""))
        if match is None:
            raise BackendStateError(f"build job {job}: no queue item in response")
        logger.info(f"triggered jenkins job {job}, queue item {match.group(1)}")
        return match.group(1)

    @staticmethod
    def _queue_id(info: Dict[str, Any], job: str) -> str:
        queue_item = info.get("queueItem")
        if not isinstance(queue_item, dict) or "id" not in queue_item:
            raise BackendStateError(f"job {job} is queued but has no queue item id")
        return str(int(queue_item["id"]))

    async def inspect(self, ref: UnitRef) -> InfoSnapshot:
        job = self.job_name(ref)
        resp = await self._request("GET", self.config.job_info_uri, url_params={"job": job})
        if resp.status_code == 404:
            return InfoSnapshot(state=UnitState.MISSING)
        self._ensure_ok(resp, f"get job {job}")
        info = self._json(resp, f"get job {job}")
        if info.get("inQueue"):
            return InfoSnapshot(state=UnitState.QUEUED, handle=self._queue_id(info, job))
        if not info.get("lastBuild"):
            return InfoSnapshot(state=UnitState.IDLE)

        resp = await self._request("GET", self.config.build_info_uri, url_params={"job": job})
        if resp.status_code == 404:
            return InfoSnapshot(state=UnitState.IDLE)
        self._ensure_ok(resp, f"get build {job}")
        build = self._json(resp, f"get build {job}")

        log_resp = await self._request("GET", self.config.build_log_uri, url_params={"job": job})
        raw_output = log_resp.text if log_resp.status_code < 400 else ""

        commit = ""
        for action in build.get("actions") or []:
            revision = (action or {}).get("lastBuiltRevision") or {}
            if revision.get("SHA1"):
                commit = revision["SHA1"]

        snapshot = InfoSnapshot(
            handle=str(build.get("number", "")),
            start_ts=int(build.get("timestamp") or 0),
            duration=int(build.get("duration") or 0),
            raw_output=raw_output,
            commit=commit,
        )
        if build.get("building"):
            snapshot.state = UnitState.RUNNING
        else:
            snapshot.state = UnitState.FINISHED
            snapshot.result = _RESULTS.get(build.get("result") or "")
        return snapshot

    async def cancel(self, ref: UnitRef, snapshot: InfoSnapshot) -> None:
        job = self.job_name(ref)
        if snapshot.state == UnitState.QUEUED:
            resp = await self._request(
                "POST", self.config.cancel_queue_item_uri, url_params={"id": int(snapshot.handle or 0)}
            )
            self._ensure_ok(resp, f"cancel queue item {snapshot.handle}")
        elif snapshot.state == UnitState.RUNNING:
            resp = await self._request("POST", self.config.stop_job_uri, url_params={"job": job})
            self._ensure_ok(resp, f"stop job {job}")

    async def delete_artifact(self, ref: UnitRef) -> None:
        job = self.job_name(ref)
        logger.info(f"deleting last build of {job}")
        resp = await self._request("POST", self.config.delete_build_uri, url_params={"job": job})
        if resp.status_code != 404:
            self._ensure_ok(resp, f"delete build {job}")

    async def _script(self, script: str) -> str:
        resp = await self._request("POST", self.config.script_uri, data={"script": script})
        self._ensure_ok(resp, "script console")
        return resp.text

    async def active_workers(self) -> List[str]:
        output = await self._script(ACTIVE_NODES_SCRIPT)
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def run_script(self, node_name: str, command: str) -> str:
        escaped = command.replace('"', '\\"')
        return await self._script(SCRIPT_SKEL.format(node=node_name, command=escaped))
