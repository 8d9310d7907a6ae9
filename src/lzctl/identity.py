"""Managed identity and GitHub OIDC trust provisioning.

Ensures, idempotently:

1. A user-assigned managed identity.
2. One federated credential per distinct GitHub subject (environment, and
   optionally branches and pull requests).
3. Role assignments for the identity's principal at a caller scope.

Federated credentials and role assignments are listed and filtered before
anything is created, so a re-run records Skipped steps instead of conflicts.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field

from .client import ROLE_ASSIGNMENT_EXISTS_CODE, ControlPlaneError, role_definition_resource_id
from .config import VALID_GUID_PATTERN, IdentitySettings
from .models import (
    CredentialChain,
    FederatedCredentialAttributes,
    FederatedCredentialPlan,
    IdentityAttributes,
    ResourceDescriptor,
    ResourceKind,
    RoleAssignmentAttributes,
    RoleAssignmentPlan,
    Scope,
)
from .report import Action, Outcome
from .steps import StepResult, StepRunner
from .waiter import PropagationWaiter

logger = logging.getLogger(__name__)

GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
AZURE_AD_TOKEN_EXCHANGE_AUDIENCE = "api://AzureADTokenExchange"
MAX_FEDERATED_CREDENTIAL_NAME_LENGTH = 120

# Well-known Azure built-in role definition GUIDs
BUILTIN_ROLES: dict[str, str] = {
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "User Access Administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "Network Contributor": "4d97b98b-1d4f-4787-a291-c67834d212e7",
    "Storage Blob Data Contributor": "ba92f5b4-2d11-453d-a403-e96b0029c9fe",
    "Storage Account Contributor": "17d1049b-9a84-46fb-8f53-869881c3d3ab",
    "Key Vault Administrator": "00482a5a-887f-4fb3-b363-3b7fe8e74483",
    "Key Vault Secrets User": "4633458b-17de-408a-b874-0445c86b69e6",
    "Private DNS Zone Contributor": "b12aa53e-6015-4669-85d0-8515ebb3ae7f",
    "Monitoring Contributor": "749f88d5-cbae-40b8-bcfc-e573ddc772fa",
    "AcrPush": "8311e382-0749-4cb8-b61a-304f252e45ec",
    "AcrPull": "7f951dda-4ed3-4680-a7ca-43fe172d538d",
}
_BUILTIN_ROLES_LOWER = {name.lower(): guid for name, guid in BUILTIN_ROLES.items()}


def _credential_name(value: str) -> str:
    name = re.sub(r"[^A-Za-z0-9_-]", "-", value).strip("-")
    return name[:MAX_FEDERATED_CREDENTIAL_NAME_LENGTH]


def federated_credential_plans(settings: IdentitySettings) -> list[FederatedCredentialPlan]:
    """Trust subjects for a repository, environment first."""
    repo = settings.github_repo
    repo_name = settings.repository_name

    def plan(name: str, subject: str) -> FederatedCredentialPlan:
        return FederatedCredentialPlan(
            name=_credential_name(name),
            subject=subject,
            issuer=GITHUB_OIDC_ISSUER,
            audience=AZURE_AD_TOKEN_EXCHANGE_AUDIENCE,
        )

    plans = [
        plan(f"{repo_name}-{settings.environment}", f"repo:{repo}:environment:{settings.environment}")
    ]
    for branch in settings.federated_branches:
        plans.append(plan(f"{repo_name}-branch-{branch}", f"repo:{repo}:ref:refs/heads/{branch}"))
    if settings.federate_pull_requests:
        plans.append(plan(f"{repo_name}-pr", f"repo:{repo}:pull_request"))
    return plans


def role_assignment_name(principal_id: str, role_definition_guid: str, scope: str) -> str:
    """Deterministic assignment name so retries hit the same resource."""
    return str(
        uuid.uuid5(uuid.NAMESPACE_URL, f"{principal_id}:{role_definition_guid}:{scope.lower()}")
    )


@dataclass
class IdentityResult:
    """What later phases need from the identity phase."""

    identity: ResourceDescriptor | None = None
    steps: list[StepResult] = field(default_factory=list)
    created: bool = False

    @property
    def principal_id(self) -> str | None:
        attrs = self.identity.attributes if self.identity else None
        return attrs.principal_id if isinstance(attrs, IdentityAttributes) else None

    @property
    def client_id(self) -> str | None:
        attrs = self.identity.attributes if self.identity else None
        return attrs.client_id if isinstance(attrs, IdentityAttributes) else None

    @property
    def ok(self) -> bool:
        return all(s.ok for s in self.steps)


class IdentityProvisioner:
    """Ensures the identity chain: identity, federated credentials, roles."""

    def __init__(self, runner: StepRunner, waiter: PropagationWaiter) -> None:
        self._runner = runner
        self._waiter = waiter
        self._config = runner.config

    def build_chain(self) -> CredentialChain:
        settings = self._settings
        scope = Scope(self._config.subscription_id, self._config.resource_group)
        role_scope = settings.role_scope or self._config.subscription_scope
        return CredentialChain(
            identity=ResourceDescriptor(
                kind=ResourceKind.IDENTITY,
                name=settings.identity_name,
                scope=scope,
                attributes=IdentityAttributes(location=self._config.location),
            ),
            federated_credentials=federated_credential_plans(settings),
            role_assignments=[RoleAssignmentPlan(role, role_scope) for role in settings.roles],
        )

    @property
    def _settings(self) -> IdentitySettings:
        if self._config.identity is None:
            raise ValueError("No identity settings configured")
        return self._config.identity

    def provision(self, blocked_by: str | None = None) -> IdentityResult:
        chain = self.build_chain()
        result = IdentityResult()

        identity_step = self._runner.ensure(chain.identity, blocked_by)
        result.steps.append(identity_step)
        result.identity = identity_step.descriptor
        result.created = identity_step.step.outcome == Outcome.CREATED
        if result.created:
            # Entra ID replication lags the ARM create
            self._waiter.pause(self._config.timing.identity_propagation_seconds)

        dependents_blocked = identity_step.blocker()
        result.steps += self.ensure_federated_credentials(
            chain.identity, chain.federated_credentials, dependents_blocked,
            identity_exists=identity_step.existed or result.created,
        )
        result.steps += self.ensure_role_assignments(
            result.principal_id, chain.role_assignments, dependents_blocked
        )
        return result

    # -------------------------------------------------------------------------
    # Federated credentials
    # -------------------------------------------------------------------------

    def ensure_federated_credentials(
        self,
        identity: ResourceDescriptor,
        plans: list[FederatedCredentialPlan],
        blocked_by: str | None = None,
        identity_exists: bool = True,
    ) -> list[StepResult]:
        scope = identity.scope.child(identity.name)
        desired = [
            ResourceDescriptor(
                kind=ResourceKind.FEDERATED_CREDENTIAL,
                name=plan.name,
                scope=scope,
                attributes=FederatedCredentialAttributes(
                    issuer=plan.issuer, subject=plan.subject, audiences=[plan.audience]
                ),
            )
            for plan in plans
        ]
        if blocked_by:
            return [self._runner.block(Action.CREATE, d, blocked_by) for d in desired]

        existing: list[ResourceDescriptor] = []
        if identity_exists:
            try:
                existing = self._runner.client.list(ResourceKind.FEDERATED_CREDENTIAL, scope)
            except ControlPlaneError as e:
                return [self._runner.fail(Action.PROBE, d, str(e)) for d in desired]

        by_name = {c.name.lower(): c for c in existing}
        by_subject: dict[str, ResourceDescriptor] = {}
        for credential in existing:
            attrs = credential.attributes
            if isinstance(attrs, FederatedCredentialAttributes):
                by_subject[attrs.subject] = credential

        return [self._ensure_credential(d, by_name, by_subject) for d in desired]

    def _ensure_credential(
        self,
        desired: ResourceDescriptor,
        by_name: dict[str, ResourceDescriptor],
        by_subject: dict[str, ResourceDescriptor],
    ) -> StepResult:
        attrs = desired.attributes
        assert isinstance(attrs, FederatedCredentialAttributes)
        client = self._runner.client

        holder = by_subject.get(attrs.subject)
        if holder is not None and holder.name.lower() != desired.name.lower():
            self._runner.reporter.warn(
                f"Subject '{attrs.subject}' is already trusted by federated credential "
                f"'{holder.name}'; not creating '{desired.name}'"
            )
            return self._runner.skip(desired, holder, f"subject held by '{holder.name}'")

        current = by_name.get(desired.name.lower())
        if current is None:
            return self._runner.mutate(
                Action.CREATE, desired, lambda: client.create(desired), detail=attrs.subject
            )

        live = current.attributes
        if (
            isinstance(live, FederatedCredentialAttributes)
            and live.subject == attrs.subject
            and live.issuer == attrs.issuer
            and set(attrs.audiences) <= set(live.audiences)
        ):
            return self._runner.skip(desired, current, "already configured")

        return self._runner.mutate(
            Action.PATCH,
            desired,
            lambda: client.update(desired),
            detail=f"subject -> {attrs.subject}",
        )

    # -------------------------------------------------------------------------
    # Role assignments
    # -------------------------------------------------------------------------

    def resolve_role_definition(self, role_name: str, scope: str) -> str | None:
        """Built-in table first, GUIDs pass through, then a lookup by name."""
        guid = _BUILTIN_ROLES_LOWER.get(role_name.lower())
        if guid:
            return guid
        if re.match(VALID_GUID_PATTERN, role_name.lower()):
            return role_name.lower()
        logger.info(f"Role '{role_name}' is not a known built-in role, looking it up")
        return self._runner.client.find_role_definition(role_name, scope)

    def ensure_role_assignments(
        self,
        principal_id: str | None,
        plans: list[RoleAssignmentPlan],
        blocked_by: str | None = None,
    ) -> list[StepResult]:
        results: list[StepResult] = []
        existing_by_scope: dict[str, list[ResourceDescriptor]] = {}
        subscription_id = self._config.subscription_id

        for plan in plans:
            placeholder = self._role_descriptor(plan, principal_id or "pending", plan.role_name)
            if blocked_by:
                results.append(self._runner.block(Action.CREATE, placeholder, blocked_by))
                continue

            try:
                role_guid = self.resolve_role_definition(plan.role_name, plan.scope)
            except ControlPlaneError as e:
                results.append(self._runner.fail(Action.PROBE, placeholder, str(e)))
                continue
            if role_guid is None:
                results.append(
                    self._runner.fail(
                        Action.PROBE, placeholder, f"Role '{plan.role_name}' was not found"
                    )
                )
                continue

            if principal_id is None:
                # Identity does not exist yet (preview): nothing to list
                results.append(
                    self._runner.mutate(
                        Action.CREATE, placeholder, lambda: None, detail=self._detail(plan)
                    )
                    if self._runner.preview
                    else self._runner.fail(
                        Action.CREATE, placeholder, "Identity principal id is unknown"
                    )
                )
                continue

            desired = self._role_descriptor(
                plan,
                principal_id,
                role_assignment_name(principal_id, role_guid, plan.scope),
                role_definition_resource_id(subscription_id, role_guid),
            )

            if plan.scope not in existing_by_scope:
                try:
                    existing_by_scope[plan.scope] = self._runner.client.list_role_assignments(
                        plan.scope, principal_id
                    )
                except ControlPlaneError as e:
                    results.append(self._runner.fail(Action.PROBE, desired, str(e)))
                    continue

            match = self._find_assignment(existing_by_scope[plan.scope], role_guid)
            if match is not None:
                detail = f"{self._detail(plan)} already assigned"
                results.append(self._runner.skip(desired, match, detail))
                continue

            results.append(
                self._runner.mutate(
                    Action.CREATE,
                    desired,
                    lambda d=desired: self._runner.client.create(d),
                    detail=self._detail(plan),
                    exists_codes=frozenset({ROLE_ASSIGNMENT_EXISTS_CODE}),
                )
            )
        return results

    @staticmethod
    def _detail(plan: RoleAssignmentPlan) -> str:
        return f"{plan.role_name} at {plan.scope}"

    @staticmethod
    def _find_assignment(
        assignments: list[ResourceDescriptor], role_guid: str
    ) -> ResourceDescriptor | None:
        for assignment in assignments:
            attrs = assignment.attributes
            if not isinstance(attrs, RoleAssignmentAttributes):
                continue
            if attrs.role_definition_id.lower().endswith(role_guid.lower()):
                return assignment
        return None

    def _role_descriptor(
        self,
        plan: RoleAssignmentPlan,
        principal_id: str,
        name: str,
        role_definition_id: str | None = None,
    ) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=ResourceKind.ROLE_ASSIGNMENT,
            name=name,
            scope=Scope(self._config.subscription_id),
            attributes=RoleAssignmentAttributes(
                role_definition_id=role_definition_id or plan.role_name,
                principal_id=principal_id,
                scope=plan.scope,
                role_name=plan.role_name,
            ),
        )
