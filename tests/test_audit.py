import threading

from tenantguard.service.audit import (
    AuditEmitter,
    LoggingAuditSink,
    MemoryAuditSink,
    StoreAuditSink,
)
from tenantguard.storage.models import AuditEvent


class ExplodingSink:
    def record(self, event):
        raise RuntimeError("sink down")


class BlockingSink:
    def __init__(self):
        self.release = threading.Event()
        self.events = []

    def record(self, event):
        self.release.wait(timeout=5)
        self.events.append(event)


def test_inline_delivery_without_event_loop():
    sink = MemoryAuditSink()
    emitter = AuditEmitter([sink])
    event = emitter.record("tenant-1", "role_created", "role", resource_id="r1")
    assert sink.events == [event]
    assert event.status == "success"
    assert event.metadata == {}


def test_failing_sink_does_not_stop_others():
    sink = MemoryAuditSink()
    emitter = AuditEmitter([ExplodingSink(), sink, LoggingAuditSink()])
    emitter.record("tenant-1", "login_failed", "auth", status="failure")
    assert sink.actions() == ["login_failed"]


async def test_emit_does_not_block_caller():
    sink = BlockingSink()
    emitter = AuditEmitter([sink])
    emitter.record("tenant-1", "session_created", "session")
    # The caller got control back while the sink is still blocked
    assert sink.events == []
    sink.release.set()
    await emitter.drain()
    assert [e.action for e in sink.events] == ["session_created"]


async def test_drain_with_nothing_pending():
    await AuditEmitter([]).drain()


async def test_store_sink_persists_through_gate(runtime, store, acme):
    sink = StoreAuditSink(runtime.gate)
    sink.record(AuditEvent(tenant_id=acme.tenant.id, action="custom", resource_type="test"))
    sink.record(AuditEvent(tenant_id=None, action="tenantless", resource_type="test"))
    actions = [e.action for e in store.audit_events]
    assert "custom" in actions
    assert "tenantless" in actions


async def test_services_emit_after_commit(runtime, acme, audit_sink):
    await runtime.roles.create_role(acme.tenant.id, "auditor", actor_id=acme.owner.id)
    await runtime.audit.drain()
    event = [e for e in audit_sink.events if e.action == "role_created"][-1]
    assert event.tenant_id == acme.tenant.id
    assert event.user_id == acme.owner.id
    assert event.resource_type == "role"
