"""Confirmation gate for destructive runs."""

from __future__ import annotations

import logging
from collections.abc import Callable

import click

from .config import TEARDOWN_CONFIRMATION_LITERAL, RunConfig

logger = logging.getLogger(__name__)


class UserAbort(Exception):
    """The operator declined to continue. Not an error: exits 0."""

    pass


class ConfirmationGate:
    """Decides between preview and execution, and asks before deleting.

    Args:
        config: The run configuration (preview and force flags).
        prompt: Callable that asks the operator for a line of input.
    """

    def __init__(
        self,
        config: RunConfig,
        prompt: Callable[[str], str] | None = None,
    ) -> None:
        self._config = config
        self._prompt = prompt or self._click_prompt

    @staticmethod
    def _click_prompt(text: str) -> str:
        return click.prompt(text, default="", show_default=False)

    @staticmethod
    def should_proceed(preview_only: bool, force: bool, destructive: bool) -> bool:
        """Whether mutating calls may be made without asking.

        Preview never mutates. Non-destructive runs and forced runs proceed.
        Destructive runs without force must be confirmed first.
        """
        if preview_only:
            return False
        if not destructive:
            return True
        return force

    def confirm_teardown(self, targets: list[str]) -> None:
        """Require the operator to type the confirmation literal.

        Raises:
            UserAbort: If the typed answer does not match.
        """
        if self._config.preview_only:
            return
        if self.should_proceed(self._config.preview_only, self._config.force, destructive=True):
            logger.warning("Confirmation bypassed with --force")
            return

        click.secho("The following resources will be permanently deleted:", fg="red", bold=True)
        for target in targets:
            click.echo(f"  - {target}")
        answer = self._prompt(f"Type {TEARDOWN_CONFIRMATION_LITERAL} to continue")
        if answer != TEARDOWN_CONFIRMATION_LITERAL:
            logger.info("Teardown cancelled by user")
            raise UserAbort("Teardown cancelled: confirmation did not match")
