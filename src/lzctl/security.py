"""Credential policy.

lzctl never handles secrets. It authenticates either as a managed identity
(when running on Azure compute) or through an interactive ``az login``
session, and refuses to start when service principal secrets are present in
the environment.
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Secret-based credentials detected in the environment ({env_var}).\n"
    "lzctl authenticates with 'az login' or a managed identity only.\n"
    "Unset {env_var} and re-run."
)


class SecretlessViolationError(Exception):
    """Raised when secret-based credentials are present in the environment."""

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to run with client secrets or passwords in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_credential(managed_identity_client_id: str | None = None) -> TokenCredential:
    """Return the credential lzctl uses for every control-plane call.

    Args:
        managed_identity_client_id: Client id of a user-assigned managed
            identity. When omitted, the Azure CLI login is used.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_architecture()

    if managed_identity_client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": managed_identity_client_id[:8] + "..."},
        )
        return ManagedIdentityCredential(client_id=managed_identity_client_id)

    logger.debug("Using Azure CLI credential")
    return AzureCliCredential()
