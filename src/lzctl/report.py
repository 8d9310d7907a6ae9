"""Execution reporting and log setup.

Every step an orchestrator takes is recorded as an OperationStep and logged
immediately at a level matching its outcome. At the end of a run the
reporter renders a summary block; the report's ``success`` flag decides the
process exit status.
"""

from __future__ import annotations

import json
import logging
import sys
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import click

from .models import ResourceDescriptor

logger = logging.getLogger(__name__)

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

SUMMARY_RULE = "=" * 72


class Action(str, Enum):
    PROBE = "Probe"
    CREATE = "Create"
    PATCH = "Patch"
    DELETE = "Delete"


class Outcome(str, Enum):
    SKIPPED = "Skipped"
    CREATED = "Created"
    DELETED = "Deleted"
    PATCHED = "Patched"
    FAILED = "Failed"
    PLANNED = "Planned"
    TOLERATED = "Tolerated"
    BLOCKED = "Blocked"
    VERIFIED = "Verified"


# Outcomes that let dependent steps proceed
COMPLETED_OUTCOMES: frozenset[Outcome] = frozenset({
    Outcome.SKIPPED,
    Outcome.CREATED,
    Outcome.PATCHED,
    Outcome.DELETED,
    Outcome.PLANNED,
    Outcome.VERIFIED,
})

_OUTCOME_LEVELS: dict[Outcome, int] = {
    Outcome.CREATED: SUCCESS,
    Outcome.DELETED: SUCCESS,
    Outcome.PATCHED: SUCCESS,
    Outcome.VERIFIED: SUCCESS,
    Outcome.SKIPPED: logging.INFO,
    Outcome.PLANNED: logging.INFO,
    Outcome.TOLERATED: logging.WARNING,
    Outcome.BLOCKED: logging.WARNING,
    Outcome.FAILED: logging.ERROR,
}


@dataclass(frozen=True)
class OperationStep:
    """One probe or mutation against one resource."""

    action: Action
    target: ResourceDescriptor
    outcome: Outcome
    detail: str = ""

    @property
    def completed(self) -> bool:
        return self.outcome in COMPLETED_OUTCOMES

    def describe(self) -> str:
        text = f"{self.action.value} {self.target.label}: {self.outcome.value}"
        if self.detail:
            text += f" ({self.detail})"
        return text


@dataclass(frozen=True)
class SourceControlResult:
    """Result of one source-control operation (never affects exit status)."""

    operation: str
    success: bool
    detail: str = ""


@dataclass
class ExecutionReport:
    """Ordered record of one run."""

    operation: str
    preview: bool = False
    steps: list[OperationStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    remediation: list[str] = field(default_factory=list)
    source_control_results: list[SourceControlResult] = field(default_factory=list)
    # Values the operator needs after provisioning (client id, backend names, ...)
    outputs: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(step.outcome != Outcome.FAILED for step in self.steps)

    def counts(self) -> Counter[Outcome]:
        return Counter(step.outcome for step in self.steps)

    def steps_with(
        self, action: Action | None = None, outcome: Outcome | None = None
    ) -> list[OperationStep]:
        return [
            s
            for s in self.steps
            if (action is None or s.action == action) and (outcome is None or s.outcome == outcome)
        ]


class ExecutionReporter:
    """Records steps into an ExecutionReport and renders it.

    Args:
        report: The report to append to.
        echo: Output function for the summary block.
    """

    def __init__(
        self,
        report: ExecutionReport,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.report = report
        self._echo = echo or click.echo

    def record(
        self,
        action: Action,
        target: ResourceDescriptor,
        outcome: Outcome,
        detail: str = "",
    ) -> OperationStep:
        step = OperationStep(action=action, target=target, outcome=outcome, detail=detail)
        self.report.steps.append(step)
        logger.log(
            _OUTCOME_LEVELS[outcome],
            step.describe(),
            extra={
                "action": action.value,
                "kind": target.kind.value,
                "resource": target.name,
                "outcome": outcome.value,
            },
        )
        return step

    def warn(self, message: str) -> None:
        self.report.warnings.append(message)
        logger.warning(message)

    def remediate(self, note: str) -> None:
        self.report.remediation.append(note)

    def source_control(self, result: SourceControlResult) -> None:
        self.report.source_control_results.append(result)
        level = SUCCESS if result.success else logging.WARNING
        suffix = f" ({result.detail})" if result.detail else ""
        logger.log(level, f"GitHub: {result.operation}{suffix}")

    def output(self, key: str, value: str) -> None:
        self.report.outputs[key] = value

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def render_summary(self) -> str:
        report = self.report
        title = f"{report.operation.capitalize()} summary"
        if report.preview:
            title += " (preview, no changes made)"

        lines = [SUMMARY_RULE, title, SUMMARY_RULE]
        counts = report.counts()
        if counts:
            lines.append(
                "  ".join(f"{o.value}: {counts[o]}" for o in Outcome if counts[o])
            )
        for step in report.steps:
            lines.append(f"  [{step.outcome.value}] {step.action.value} {step.target.label}")

        if report.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"  - {w}" for w in report.warnings)
        if report.remediation:
            lines.append("")
            lines.append("Manual remediation required:")
            lines.extend(f"  - {note}" for note in report.remediation)
        if report.source_control_results:
            lines.append("")
            lines.append("GitHub:")
            for result in report.source_control_results:
                marker = "ok" if result.success else "failed"
                suffix = f": {result.detail}" if result.detail else ""
                lines.append(f"  [{marker}] {result.operation}{suffix}")

        lines.append("")
        lines.append(f"Result: {'SUCCESS' if report.success else 'FAILED'}")
        lines.append(SUMMARY_RULE)
        return "\n".join(lines)

    def emit_summary(self) -> None:
        self._echo(self.render_summary())

    def emit_manual_configuration(self) -> None:
        """Print the values an operator must copy into GitHub and Terraform."""
        text = render_manual_configuration(self.report.outputs)
        if text:
            self._echo(text)


def render_manual_configuration(outputs: dict[str, str]) -> str:
    """GitHub Actions secrets and, when a backend exists, Terraform backend config."""
    client_id = outputs.get("client_id")
    if not client_id:
        return ""
    subscription_id = outputs.get("subscription_id", "[SUBSCRIPTION-ID]")
    tenant_id = outputs.get("tenant_id", "[TENANT-ID]")

    lines = [
        "GitHub Actions configuration",
        f"Add these secrets to the '{outputs.get('environment', '')}' environment of "
        f"{outputs.get('github_repo', 'the repository')}:",
        f"  AZURE_CLIENT_ID:          {client_id}",
        f"  AZURE_SUBSCRIPTION_ID:    {subscription_id}",
        f"  AZURE_TENANT_ID:          {tenant_id}",
    ]
    if outputs.get("vnet_name"):
        lines.append(f"  VNET_NAME:                {outputs['vnet_name']}")
    if outputs.get("vnet_resource_group"):
        lines.append(f"  VNET_RESOURCE_GROUP_NAME: {outputs['vnet_resource_group']}")
    lines += [
        "",
        "- name: Azure Login",
        "  uses: azure/login@v2",
        "  with:",
        "    client-id: ${{ secrets.AZURE_CLIENT_ID }}",
        "    tenant-id: ${{ secrets.AZURE_TENANT_ID }}",
        "    subscription-id: ${{ secrets.AZURE_SUBSCRIPTION_ID }}",
    ]

    if outputs.get("storage_account"):
        lines += [
            "",
            "Terraform backend configuration",
            "terraform {",
            '  backend "azurerm" {',
            f'    resource_group_name  = "{outputs.get("storage_resource_group", "")}"',
            f'    storage_account_name = "{outputs["storage_account"]}"',
            f'    container_name       = "{outputs.get("storage_container", "")}"',
            '    key                  = "terraform.tfstate"',
            "    use_azuread_auth     = true",
            "  }",
            "}",
            "",
            "Terraform environment variables:",
            "  ARM_USE_AZUREAD:     true",
            "  ARM_USE_OIDC:        true",
            f"  ARM_CLIENT_ID:       {client_id}",
            f"  ARM_SUBSCRIPTION_ID: {subscription_id}",
            f"  ARM_TENANT_ID:       {tenant_id}",
        ]
    return "\n".join(lines)


# =============================================================================
# Logging setup
# =============================================================================

_RESERVED_RECORD_FIELDS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})

_LEVEL_COLORS: dict[str, str] = {
    "DEBUG": "bright_black",
    "INFO": "blue",
    "SUCCESS": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS and not key.startswith("_"):
                log_data[key] = value
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[LEVEL] message`` lines with a colored level tag."""

    def format(self, record: logging.LogRecord) -> str:
        tag = click.style(
            f"[{record.levelname}]", fg=_LEVEL_COLORS.get(record.levelname), bold=True
        )
        message = f"{tag} {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(log_format: str = "console", verbose: bool = False) -> None:
    """Install the lzctl handler on the root logger (replacing a previous one)."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if log_format == "json" else ConsoleFormatter())
    handler.set_name("lzctl")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "lzctl":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
