"""In-memory Azure control plane for orchestration tests.

Provides a stateful fake of the control-plane client interface so that
provisioning and teardown can be exercised end to end without Azure.

Key Features:
- In-memory resources keyed by kind, name and scope
- Server-side back-references (NSG associations, NICs and endpoints on subnets)
- ARM-like refusals (subnet in use, environment still hosting apps)
- Error injection, including Azure Policy denials
- Asynchronous storage provisioning and lingering deletes
- A virtual clock so waits never sleep

Usage:
    from fake_cloud import FakeClock, FakeControlPlane

    cloud = FakeControlPlane()
    cloud.add_resource_group("myapp-dev-networking")
    orchestrator = ProvisioningOrchestrator(config, cloud, waiter=PropagationWaiter(FakeClock()))
    report = orchestrator.run()

    assert not cloud.calls_for("create", ResourceKind.SUBNET)
"""

from .clock import FakeClock
from .control_plane import SUBSCRIPTION_ID, TENANT_ID, Call, FakeControlPlane

__all__ = [
    "SUBSCRIPTION_ID",
    "TENANT_ID",
    "Call",
    "FakeClock",
    "FakeControlPlane",
]
