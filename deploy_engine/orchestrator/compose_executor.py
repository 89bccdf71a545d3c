# deploy_engine/orchestrator/compose_executor.py
"""Orchestration executor backed by the `docker compose` CLI."""

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from deploy_engine.core.errors import OrchestrationFailure, OrchestrationTimeout
from deploy_engine.orchestrator.executor import OrchestrationExecutor, ServiceState

logger = logging.getLogger(__name__)


COMPOSE_FILE = "docker-compose.yml"
ENV_FILE = ".env"


class DockerComposeExecutor(OrchestrationExecutor):
    """
    Each stack gets a project directory `<work_dir>/<stack>` holding the
    corrected Compose file and its `.env`. Every CLI invocation is bounded
    by `timeout_seconds`; the process is killed when the ceiling is hit.
    """

    def __init__(
        self,
        work_dir: str,
        *,
        binary: str = "docker",
        timeout_seconds: float = 300.0,
        pull_images: bool = False,
    ):
        self.work_dir = Path(work_dir)
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.pull_images = pull_images

    def project_dir(self, stack_name: str) -> Path:
        return self.work_dir / stack_name

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def deploy(self, compose_source: str, stack_name: str, env: Dict[str, str]) -> None:
        project_dir = self.project_dir(stack_name)
        try:
            project_dir.mkdir(parents=True, exist_ok=True)
            (project_dir / COMPOSE_FILE).write_text(compose_source, encoding="utf-8")
            self._write_env_file(project_dir, env)
        except OSError as e:
            raise OrchestrationFailure(f"failed to prepare project directory: {e}") from e

        if self.pull_images:
            self._run(stack_name, ["pull"])

        self._run(stack_name, ["up", "--detach", "--remove-orphans"])
        logger.info(f"[compose] stack {stack_name} is up")

    def stop(self, stack_name: str) -> None:
        self._run(stack_name, ["stop"])

    def start(self, stack_name: str) -> None:
        self._run(stack_name, ["start"])

    def restart(self, stack_name: str) -> None:
        self._run(stack_name, ["restart"])

    def remove(self, stack_name: str, remove_volumes: bool = False) -> None:
        args = ["down"]
        if remove_volumes:
            args.append("--volumes")
        self._run(stack_name, args)

        project_dir = self.project_dir(stack_name)
        if project_dir.exists():
            shutil.rmtree(project_dir, ignore_errors=True)

    def status(self, stack_name: str) -> Dict[str, ServiceState]:
        output = self._run(stack_name, ["ps", "--all", "--format", "json"])
        return parse_ps_output(output)

    # -------------------------
    # CLI
    # -------------------------

    def command(self, stack_name: str, args: List[str]) -> List[str]:
        return [self.binary, "compose", "--project-name", stack_name, *args]

    def _run(self, stack_name: str, args: List[str]) -> str:
        cmd = self.command(stack_name, args)
        project_dir = self.project_dir(stack_name)
        cwd = str(project_dir) if project_dir.is_dir() else None

        logger.debug(f"[compose] running {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise OrchestrationTimeout(
                f"command timed out after {self.timeout_seconds}s: {' '.join(cmd)}",
                command=cmd,
                output=_text(e.stderr) or _text(e.stdout),
            ) from e
        except OSError as e:
            raise OrchestrationFailure(
                f"failed to run {' '.join(cmd)}: {e}",
                command=cmd,
            ) from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise OrchestrationFailure(
                f"command failed ({result.returncode}): {' '.join(cmd)}: {output}",
                command=cmd,
                returncode=result.returncode,
                output=output,
            )

        return result.stdout or ""

    def _write_env_file(self, project_dir: Path, env: Dict[str, str]) -> None:
        env_path = project_dir / ENV_FILE
        if not env:
            if env_path.exists():
                env_path.unlink()
            return
        lines = [f"{key}={value}" for key, value in sorted(env.items())]
        env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def parse_ps_output(output: str) -> Dict[str, ServiceState]:
    """
    Parse `compose ps --format json`.

    Older Compose releases print one JSON array, newer ones one object
    per line.
    """
    output = output.strip()
    if not output:
        return {}

    try:
        rows = json.loads(output)
        if isinstance(rows, dict):
            rows = [rows]
    except json.JSONDecodeError:
        rows = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"[compose] skipping unparseable ps line: {line}")

    services: Dict[str, ServiceState] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        name = row.get("Service") or row.get("Name")
        if not name:
            continue
        services[name] = ServiceState(
            state=str(row.get("State", "unknown")).lower(),
            health=row.get("Health") or None,
        )
    return services


def _text(value: Optional[object]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
