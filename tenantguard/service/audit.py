from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set

from tenantguard.logging import get_logger
from tenantguard.service.tenancy import TenantGate
from tenantguard.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes each event to the structured log."""

    def record(self, event: AuditEvent) -> None:
        logger.info(
            "audit_event",
            audit_id=event.id,
            tenant_id=event.tenant_id,
            user_id=event.user_id,
            action=event.action,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            status=event.status,
            ip_address=event.ip_address,
            metadata=event.metadata or {},
        )


class StoreAuditSink:
    """Persists events to ``audit_logs`` through the tenant gate.

    Events without a tenant (provisioning, unknown tenant on login) go
    through a bypass transaction.
    """

    def __init__(self, gate: TenantGate) -> None:
        self.gate = gate

    def record(self, event: AuditEvent) -> None:
        if event.tenant_id:
            with self.gate.scope(event.tenant_id) as tx:
                tx.insert_audit_event(event)
        else:
            with self.gate.bypass("audit_event_without_tenant") as tx:
                tx.insert_audit_event(event)


class MemoryAuditSink:
    """Keeps events in a list; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]


class AuditEmitter:
    """Fire-and-forget fan-out to audit sinks.

    Delivery runs on an executor thread when an event loop is running and
    inline otherwise. Sink errors are logged and dropped; emission never
    blocks or fails the caller. Call ``emit`` only after the caller's
    gate has closed.
    """

    def __init__(self, sinks: Sequence[AuditSink], *, executor: Optional[Executor] = None) -> None:
        self.sinks = list(sinks)
        self._executor = executor
        self._pending: Set[asyncio.Future] = set()

    def _deliver(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception as exc:
                logger.error(
                    "audit_sink_failed",
                    sink=type(sink).__name__,
                    action=event.action,
                    tenant_id=event.tenant_id,
                    error=str(exc),
                )

    def emit(self, event: AuditEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(event)
            return
        future = loop.run_in_executor(self._executor, self._deliver, event)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def record(
        self,
        tenant_id: Optional[str],
        action: str,
        resource_type: str,
        *,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: str = "success",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            tenant_id=tenant_id,
            action=action,
            resource_type=resource_type,
            user_id=user_id,
            resource_id=resource_id,
            status=status,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata or {},
        )
        self.emit(event)
        return event

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used at shutdown and in tests."""
        pending = [f for f in self._pending if not f.done()]
        self._pending.difference_update(f for f in list(self._pending) if f.done())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
