from decimal import Decimal

import pytest
from sqlalchemy import select

from multichat.entities import PendingCharge
from multichat.errors import InsufficientBalance, InvalidRequest, NotAMember, PermissionDenied
from multichat.pending_charge_recorder import response_charge_key


def _pending(service, key):
    session = service.SessionFactory()
    try:
        return session.execute(select(PendingCharge).where(PendingCharge.idempotency_key == key)).scalar_one()
    finally:
        session.close()


def test_human_message_enqueues_a_job_billed_to_the_sender(service, group):
    out = service.send_message(group.cid, group.b, "@Aria what is this place?")

    assert out["status"] == "queued"
    assert out["responders"] == [group.aria]
    assert out["message"]["sequence"] == 1
    (job_id,) = out["job_ids"]

    job = service.get_job(job_id)
    assert job["requesting_user_id"] == group.b
    assert job["payload"] == {
        "mode": "reply",
        "character_id": group.aria,
        "trigger_message_id": out["message"]["id"],
        "trigger_sequence": 1,
    }
    assert job["max_attempts"] == 3


def test_writers_only(service, group):
    outsider = service.create_user("dave", "Dave", credits=Decimal("10"))
    with pytest.raises(PermissionDenied):
        service.send_message(group.cid, group.c, "can I talk?")
    with pytest.raises(NotAMember):
        service.send_message(group.cid, outsider["id"], "let me in")
    assert service.list_messages(group.cid, group.a) == []


def test_low_balance_keeps_the_message_but_queues_nothing(service, group):
    poor = service.create_user("dave", "Dave", credits=Decimal("0.5"))
    service.invite(group.cid, group.a, poor["id"])
    service.join(group.cid, poor["id"])

    out = service.send_message(group.cid, poor["id"], "@Aria hi")
    assert out["status"] == "insufficient_balance"
    assert out["job_ids"] == []
    assert [m["content"] for m in service.list_messages(group.cid, group.a)] == ["@Aria hi"]


def test_mentions_only_policy_can_select_nobody(service):
    u = service.create_user("dave", "Dave", credits=Decimal("10"))
    c1 = service.create_character("Aria")
    c2 = service.create_character("Bram")
    conv = service.create_conversation(
        u["id"], character_ids=[c1["id"], c2["id"]], policy={"responder_mode": "mentions_only"}
    )

    assert service.send_message(conv["id"], u["id"], "hello all")["status"] == "no_responder"
    assert service.send_message(conv["id"], u["id"], "@Bram hello")["responders"] == [c2["id"]]


def test_reply_is_charged_to_requester_after_commit(service, group, ledger, run_worker):
    out = service.send_message(group.cid, group.b, "@Aria hello")
    run_worker()

    job = service.get_job(out["job_ids"][0])
    assert job["state"] == "SUCCEEDED"
    reply = service.list_messages(group.cid, group.a)[-1]
    assert reply["sender_type"] == "character"
    assert reply["requesting_user_id"] == group.b
    assert reply["credit_cost"] == "0.0500"

    assert [c["user_id"] for c in ledger.charges] == [group.b]
    assert service.get_balance(group.b) == Decimal("99.9500")
    assert service.get_balance(group.a) == Decimal("100")
    assert _pending(service, response_charge_key(job["job_id"])).status == "CHARGED"


def test_reprocess_regenerates_in_place(service, group, chat_llm, ledger, run_worker):
    chat_llm.replies = ["first take", "second take"]
    service.send_message(group.cid, group.b, "@Aria describe the door")
    run_worker()
    reply = service.list_messages(group.cid, group.a)[-1]
    assert reply["content"] == "first take"

    out = service.reprocess(group.cid, reply["id"], group.a)
    assert out["status"] == "queued"
    assert service.get_job(out["job_id"])["requesting_user_id"] == group.a
    run_worker()

    messages = service.list_messages(group.cid, group.a)
    assert len(messages) == 2
    again = messages[-1]
    assert (again["id"], again["sequence"]) == (reply["id"], reply["sequence"])
    assert again["content"] == "second take"
    assert again["regenerated_count"] == 1
    assert again["requesting_user_id"] == group.a
    assert [c["user_id"] for c in ledger.charges] == [group.b, group.a]

    # the regeneration saw only what came before the reply
    last_call = chat_llm.calls[-1]["messages"]
    assert all("first take" not in m.content for m in last_call)


def test_reprocess_rules(service, group, run_worker):
    human = service.send_message(group.cid, group.b, "@Aria hi")["message"]
    run_worker()
    reply = service.list_messages(group.cid, group.a)[-1]

    with pytest.raises(InvalidRequest):
        service.reprocess(group.cid, human["id"], group.b)
    with pytest.raises(PermissionDenied):
        service.reprocess(group.cid, reply["id"], group.c)

    poor = service.create_user("dave", "Dave", credits=Decimal("0.1"))
    service.invite(group.cid, group.a, poor["id"])
    service.join(group.cid, poor["id"])
    with pytest.raises(InsufficientBalance):
        service.reprocess(group.cid, reply["id"], poor["id"])


def test_failed_charge_keeps_reply_and_is_reconciled(service, group, ledger, run_worker):
    from worker_main import ResponseApp

    ledger.fail_charges = 1
    out = service.send_message(group.cid, group.b, "@Aria hello")
    run_worker()

    key = response_charge_key(out["job_ids"][0])
    assert service.list_messages(group.cid, group.a)[-1]["sender_type"] == "character"
    assert _pending(service, key).status == "FAILED"
    assert key in service.idempotency_cache.snapshot()
    assert service.get_balance(group.b) == Decimal("100")

    ResponseApp(service).sweep()

    assert _pending(service, key).status == "CHARGED"
    assert service.idempotency_cache.snapshot() == []
    assert service.get_balance(group.b) == Decimal("99.9500")

    # a second settlement attempt never double-charges
    ResponseApp(service).sweep()
    assert service.get_balance(group.b) == Decimal("99.9500")


def test_ledger_key_is_idempotent(service, group, ledger):
    first = ledger.charge(group.b, Decimal("1.25"), "test", idempotency_key="k-1")
    again = ledger.charge(group.b, Decimal("1.25"), "test", idempotency_key="k-1")

    assert first["duplicate"] is False and again["duplicate"] is True
    assert again["ledger_entry_id"] == first["ledger_entry_id"]
    assert service.get_balance(group.b) == Decimal("98.75")


def test_ledger_never_goes_negative(service, group, ledger):
    with pytest.raises(InsufficientBalance):
        ledger.charge(group.b, Decimal("100.01"), "too much")
    assert service.get_balance(group.b) == Decimal("100")
