from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable

from opsuite.core.errors import CapabilityExecutionError, CapabilityNotRegisteredError, OpsuiteError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilityInvocation:
    # Everything a module capability may need to perform one approved action.
    tenant_id: str
    approval_id: str
    actor_id: str
    module_slug: str
    capability: str
    payload: dict[str, Any]
    task_id: str | None = None
    job_id: str | None = None
    payload_hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


CapabilityHandler = Callable[[CapabilityInvocation], Awaitable[Any]]


class CapabilityRegistry:
    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], CapabilityHandler] = {}

    def register(self, module_slug: str, capability: str, handler: CapabilityHandler) -> None:
        key = (module_slug, capability)
        if key in self._handlers:
            logger.info("capability_handler_replaced module_slug=%s capability=%s", module_slug, capability)
        self._handlers[key] = handler

    def unregister(self, module_slug: str, capability: str) -> None:
        self._handlers.pop((module_slug, capability), None)

    def is_registered(self, module_slug: str, capability: str) -> bool:
        return (module_slug, capability) in self._handlers

    def registered(self) -> list[str]:
        return sorted(f"{slug}.{capability}" for slug, capability in self._handlers)

    def resolve(self, module_slug: str, capability: str) -> CapabilityHandler:
        handler = self._handlers.get((module_slug, capability))
        if handler is None:
            raise CapabilityNotRegisteredError(module_slug, capability)
        return handler

    async def invoke(self, invocation: CapabilityInvocation) -> Any:
        # Engine errors pass through; anything else a module raises is reduced to its message.
        handler = self.resolve(invocation.module_slug, invocation.capability)
        try:
            return await handler(invocation)
        except OpsuiteError:
            raise
        except Exception as exc:  # noqa: BLE001 - module code is untrusted; keep only the message.
            message = str(exc) or exc.__class__.__name__
            raise CapabilityExecutionError(message) from exc

    def clear(self) -> None:
        self._handlers.clear()


_registry = CapabilityRegistry()


def get_capability_registry() -> CapabilityRegistry:
    return _registry


async def _noop_capability(invocation: CapabilityInvocation) -> dict[str, Any]:
    return {"ok": True, "echo": invocation.payload}


def register_default_capabilities(registry: CapabilityRegistry | None = None) -> CapabilityRegistry:
    # Built-in capabilities available without any module installed.
    target = registry or get_capability_registry()
    target.register("system", "noop", _noop_capability)
    return target
