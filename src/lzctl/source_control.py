"""GitHub environment and secrets through the ``gh`` CLI.

Everything here is fire-and-forget: failures are reported as
SourceControlResults and never change the run's exit status.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess

from .config import RunConfig
from .report import SourceControlResult

logger = logging.getLogger(__name__)

GH_COMMAND = "gh"
COMMAND_TIMEOUT_SECONDS = 60


class SourceControlError(Exception):
    """A ``gh`` invocation failed."""

    pass


def spoke_vnet_name(resource_group: str) -> str:
    """``<project>-<env>-networking`` -> ``<project>-<env>-vwan-spoke``."""
    return resource_group.replace("-networking", "-vwan-spoke", 1)


def run_command(
    cmd: list[str],
    *,
    input_text: str | None = None,
    timeout: int = COMMAND_TIMEOUT_SECONDS,
) -> subprocess.CompletedProcess[str]:
    """Run a command, capturing output.

    Raises:
        SourceControlError: If the command is missing, times out or fails.
    """
    try:
        result = subprocess.run(
            cmd,
            input=input_text,
            env=os.environ.copy(),
            timeout=timeout,
            capture_output=True,
            text=True,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise SourceControlError(f"Command timed out after {timeout}s: {' '.join(cmd[:3])}") from e
    except FileNotFoundError as e:
        raise SourceControlError(f"Command not found: {cmd[0]}") from e

    if result.returncode != 0:
        detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
        raise SourceControlError(f"Command failed: {detail}")
    return result


class GitHubEnvironmentClient:
    """Thin wrapper over ``gh`` for environments and environment secrets."""

    def __init__(self, gh: str = GH_COMMAND) -> None:
        self._gh = gh

    def is_available(self) -> bool:
        return shutil.which(self._gh) is not None

    def can_access(self, repo: str) -> bool:
        try:
            run_command([self._gh, "repo", "view", repo])
        except SourceControlError:
            return False
        return True

    def environment_exists(self, repo: str, environment: str) -> bool:
        try:
            run_command([self._gh, "api", f"repos/{repo}/environments/{environment}"])
        except SourceControlError:
            return False
        return True

    def create_environment(self, repo: str, environment: str) -> None:
        run_command(
            [
                self._gh,
                "api",
                f"repos/{repo}/environments/{environment}",
                "--method",
                "PUT",
                "--input",
                "-",
            ],
            input_text=json.dumps({"wait_timer": 0, "reviewers": []}),
        )

    def set_secret(self, repo: str, environment: str, name: str, value: str) -> None:
        # Value goes through stdin so it never shows up in the process list
        run_command(
            [self._gh, "secret", "set", name, "--repo", repo, "--env", environment],
            input_text=value,
        )


def github_secret_values(config: RunConfig, outputs: dict[str, str]) -> dict[str, str]:
    """The environment secrets a landing zone workflow expects."""
    return {
        "AZURE_CLIENT_ID": outputs.get("client_id", ""),
        "AZURE_SUBSCRIPTION_ID": config.subscription_id,
        "AZURE_TENANT_ID": outputs.get("tenant_id") or config.tenant_id or "",
        "VNET_NAME": spoke_vnet_name(config.resource_group),
        "VNET_RESOURCE_GROUP_NAME": config.resource_group,
    }


def publish_github_secrets(
    github: GitHubEnvironmentClient,
    config: RunConfig,
    outputs: dict[str, str],
) -> list[SourceControlResult]:
    """Create the GitHub environment if needed and set its secrets."""
    assert config.identity is not None
    repo = config.identity.github_repo
    environment = config.identity.environment

    if not github.is_available():
        return [
            SourceControlResult(
                "Check GitHub CLI", False, "gh is not installed (https://cli.github.com/)"
            )
        ]
    if not github.can_access(repo):
        return [SourceControlResult(f"Access repository {repo}", False, "repository not accessible")]

    results: list[SourceControlResult] = []
    if github.environment_exists(repo, environment):
        logger.info(f"GitHub environment '{environment}' already exists, updating secrets")
    else:
        try:
            github.create_environment(repo, environment)
            results.append(SourceControlResult(f"Create environment {environment}", True))
        except SourceControlError as e:
            results.append(SourceControlResult(f"Create environment {environment}", False, str(e)))
            return results

    for name, value in github_secret_values(config, outputs).items():
        operation = f"Set secret {name}"
        if not value:
            results.append(SourceControlResult(operation, False, "value unknown"))
            continue
        try:
            github.set_secret(repo, environment, name, value)
            results.append(SourceControlResult(operation, True))
        except SourceControlError as e:
            results.append(SourceControlResult(operation, False, str(e)))
    return results
