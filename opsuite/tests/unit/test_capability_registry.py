from __future__ import annotations

import pytest

from opsuite.core.errors import ActionApprovalStateError, CapabilityExecutionError, CapabilityNotRegisteredError
from opsuite.services.capabilities import CapabilityInvocation, CapabilityRegistry, get_capability_registry


def _invocation(module_slug: str, capability: str) -> CapabilityInvocation:
    return CapabilityInvocation(
        tenant_id="t-1",
        approval_id="a-1",
        actor_id="u-1",
        module_slug=module_slug,
        capability=capability,
        payload={"value": 1},
    )


@pytest.mark.asyncio
async def test_default_registry_has_noop_capability() -> None:
    registry = get_capability_registry()
    assert registry.registered() == ["system.noop"]
    assert await registry.invoke(_invocation("system", "noop")) == {"ok": True, "echo": {"value": 1}}


@pytest.mark.asyncio
async def test_unregistered_pair_raises_typed_error() -> None:
    registry = CapabilityRegistry()
    with pytest.raises(CapabilityNotRegisteredError) as excinfo:
        await registry.invoke(_invocation("crm", "sync"))
    assert excinfo.value.module_slug == "crm"
    assert excinfo.value.capability == "sync"


@pytest.mark.asyncio
async def test_handler_errors_are_reduced_to_their_message() -> None:
    registry = CapabilityRegistry()

    async def _explode(invocation: CapabilityInvocation) -> None:
        raise KeyError("contact")

    async def _engine_error(invocation: CapabilityInvocation) -> None:
        raise ActionApprovalStateError("already undone")

    registry.register("crm", "sync", _explode)
    registry.register("crm", "undo", _engine_error)
    with pytest.raises(CapabilityExecutionError, match="contact"):
        await registry.invoke(_invocation("crm", "sync"))
    with pytest.raises(ActionApprovalStateError):
        await registry.invoke(_invocation("crm", "undo"))

    registry.unregister("crm", "sync")
    assert registry.is_registered("crm", "sync") is False
    assert registry.registered() == ["crm.undo"]
