"""End-to-end walks through the main multi-user flows."""
import time
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from multichat.entities import SENDER_USER, ConversationMemory, Message
from multichat.errors import OwnershipTransferRequired, PermissionDenied


def test_member_message_is_broadcast_and_billed_to_the_member(service, group, ledger, run_worker):
    channels = {
        uid: service.subscribe(group.cid, uid, f"ws-{name}")
        for uid, name in ((group.a, "a"), (group.b, "b"), (group.c, "c"))
    }
    for ch in channels.values():
        ch.drain()

    out = service.send_message(group.cid, group.b, "@Aria hello")

    # everyone sees the message before any generation happens
    for ch in channels.values():
        received = [e for e in ch.drain() if e.type == "message_received"]
        assert [e.payload["content"] for e in received] == ["@Aria hello"]
        assert received[0].payload["sender_id"] == group.b
    assert service.get_job(out["job_ids"][0])["requesting_user_id"] == group.b

    run_worker()

    assert [(c["user_id"], c["amount"]) for c in ledger.charges] == [(group.b, Decimal("0.0500"))]
    assert service.get_balance(group.b) == Decimal("99.9500")
    assert service.get_balance(group.a) == Decimal("100")

    for ch in channels.values():
        types = [e.type for e in ch.drain()]
        assert types == ["response_started", "message_received"]


def test_long_history_is_compressed_without_overlap(service, group, run_worker):
    session = service.SessionFactory()
    try:
        for i in range(60):
            sender = group.a if i % 2 == 0 else group.b
            service.message_log.append(session, group.cid, sender, SENDER_USER, f"line {i + 1}")
        session.commit()
    finally:
        session.close()
    assert service.compressor.should_compress(group.cid)

    service.send_message(group.cid, group.b, "@Aria so, what did we learn?")
    run_worker()

    memory = service.latest_memory(group.cid, group.a)
    assert (memory["start_sequence"], memory["end_sequence"]) == (1, 60)
    assert memory["message_count"] == 60

    session = service.SessionFactory()
    try:
        assert session.execute(select(func.count()).select_from(ConversationMemory)).scalar_one() == 1
    finally:
        session.close()
    assert not service.compressor.should_compress(group.cid)


def test_viewer_cannot_send(service, group, record_events):
    rec = record_events(group.cid)

    with pytest.raises(PermissionDenied):
        service.send_message(group.cid, group.c, "let me speak")

    session = service.SessionFactory()
    try:
        assert session.execute(select(func.count()).select_from(Message)).scalar_one() == 0
    finally:
        session.close()
    service.pump_events()
    assert rec.drain() == []


def test_generation_timeouts_fail_the_job_without_charge(service, group, chat_llm, ledger, run_worker, record_events):
    service.settings.response_timeout_seconds = 0.1
    chat_llm.delay = 0.5
    rec = record_events(group.cid)

    out = service.send_message(group.cid, group.b, "@Aria are you there?")
    run_worker()

    job = service.get_job(out["job_ids"][0])
    assert (job["state"], job["attempts"]) == ("FAILED", 3)
    assert "timed out" in job["last_error"]
    assert ledger.charges == []
    assert service.get_balance(group.b) == Decimal("100")
    assert len(rec.of_type("response_failed")) == 1
    # only the human message exists
    assert [m["sender_type"] for m in service.list_messages(group.cid, group.a)] == ["user"]


def test_owner_cannot_leave_while_others_remain(service, group):
    before = service.list_members(group.cid, group.a)

    with pytest.raises(OwnershipTransferRequired):
        service.leave(group.cid, group.a)

    assert service.list_members(group.cid, group.a) == before


@pytest.mark.parametrize("removal", ["kick", "leave"])
def test_removed_member_stops_receiving_after_presence_expiry(service, group, monkeypatch, removal):
    bob = service.subscribe(group.cid, group.b, "ws-bob")
    bob.drain()

    # bob's tab goes quiet long enough for presence to reclaim it
    monkeypatch.setattr(service.presence, "_clock", lambda: time.time() + 3600)
    assert service.presence.sweep_expired() == 1
    assert service.hub.subscribers(group.cid) == ["ws-bob"]

    if removal == "kick":
        service.kick(group.cid, group.a, group.b)
    else:
        service.leave(group.cid, group.b)
    assert service.hub.subscribers(group.cid) == []

    service.send_message(group.cid, group.a, "secret plan, bob is gone")
    received = [e.payload.get("content") for e in bob.drain() if e.type == "message_received"]
    assert received == []
