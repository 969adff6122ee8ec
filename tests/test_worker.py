import asyncio
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import update

from multichat.entities import SENDER_USER, QueueJob, utcnow
from worker_main import AppHost, AsyncGuard, CompressionApp, ResponseApp


def test_transient_failures_are_retried(service, group, chat_llm, ledger, run_worker):
    chat_llm.fail_remaining = 2
    out = service.send_message(group.cid, group.b, "@Aria hello")

    run_worker()

    job = service.get_job(out["job_ids"][0])
    assert (job["state"], job["attempts"]) == ("SUCCEEDED", 3)
    assert len(chat_llm.calls) == 3
    # each attempt makes exactly one provider call
    assert [c["retries"] for c in chat_llm.calls] == [1, 1, 1]
    assert len(ledger.charges) == 1


def test_exhausted_job_fails_once_and_charges_nothing(service, group, chat_llm, ledger, run_worker, record_events):
    rec = record_events(group.cid)
    chat_llm.fail_remaining = 10
    out = service.send_message(group.cid, group.b, "@Aria hello")

    run_worker()

    job = service.get_job(out["job_ids"][0])
    assert (job["state"], job["status"], job["attempts"]) == ("FAILED", "generation_failed", 3)
    failed = rec.of_type("response_failed")
    assert len(failed) == 1
    assert failed[0].payload["requesting_user_id"] == group.b
    assert failed[0].payload["target_message_id"] == out["message"]["id"]
    assert failed[0].payload["code"] == "generation_failed"
    assert ledger.charges == []
    assert service.get_balance(group.b) == Decimal("100")


def test_policy_errors_are_not_retried(service, group, chat_llm, ledger, run_worker, record_events):
    out = service.send_message(group.cid, group.b, "@Aria hello")
    service.kick(group.cid, group.a, group.b)
    rec = record_events(group.cid)

    run_worker()

    job = service.get_job(out["job_ids"][0])
    assert (job["state"], job["status"], job["attempts"]) == ("FAILED", "not_a_member", 1)
    assert chat_llm.calls == []
    assert ledger.charges == []
    assert rec.of_type("response_failed")[0].payload["code"] == "not_a_member"


def test_unknown_job_kind_fails_terminally(service, group):
    session = service.SessionFactory()
    try:
        job = service.job_queue.enqueue(session, "mystery", group.cid, max_attempts=5)
        session.commit()
    finally:
        session.close()

    host = AppHost(service, [ResponseApp(service)])
    guard = AsyncGuard(host, runner_id="w", poll_interval=0.01)
    assert asyncio.run(guard.run_until_idle()) == 1

    stored = service.get_job(job.job_id)
    assert (stored["state"], stored["status"]) == ("FAILED", "unroutable")


def test_jobs_of_one_conversation_run_in_order(service, group, chat_llm, run_worker):
    chat_llm.replies = ["reply one", "reply two", "reply three"]
    for text in ("@Aria one", "@Aria two", "@Aria three"):
        service.send_message(group.cid, group.b, text)

    assert run_worker(max_concurrent=4) == 3

    messages = service.list_messages(group.cid, group.a)
    assert [m["sequence"] for m in messages] == [1, 2, 3, 4, 5, 6]
    assert [m["content"] for m in messages[3:]] == ["reply one", "reply two", "reply three"]


def test_conversations_are_processed_side_by_side(service, group, run_worker):
    u = service.create_user("dave", "Dave", credits=Decimal("20"))
    ch = service.create_character("Bram")
    other = service.create_conversation(u["id"], character_ids=[ch["id"]])

    j1 = service.send_message(group.cid, group.b, "@Aria hi")["job_ids"][0]
    j2 = service.send_message(other["id"], u["id"], "hello Bram")["job_ids"][0]

    assert run_worker() == 2
    assert service.get_job(j1)["state"] == "SUCCEEDED"
    assert service.get_job(j2)["state"] == "SUCCEEDED"
    assert service.get_balance(u["id"]) == Decimal("19.9500")


def test_compression_failure_is_broadcast(service, group, summary_llm, record_events):
    service.compressor.request_compression(service.job_queue, group.cid)
    summary_llm.fail = True
    session = service.SessionFactory()
    try:
        service.message_log.append(session, group.cid, group.a, SENDER_USER, "something to summarize")
        session.commit()
    finally:
        session.close()
    rec = record_events(group.cid)

    host = AppHost(service, [ResponseApp(service), CompressionApp(service)])
    asyncio.run(AsyncGuard(host, runner_id="w", poll_interval=0.01).run_until_idle())
    service.pump_events()

    assert [e.type for e in rec.drain() if e.type.startswith("memory_")] == [
        "memory_compression_started",
        "memory_compression_failed",
    ]


def _stall(service, job_id):
    session = service.SessionFactory()
    try:
        session.execute(
            update(QueueJob).where(QueueJob.job_id == job_id).values(heartbeat_at=utcnow() - timedelta(hours=1))
        )
        session.commit()
    finally:
        session.close()


def test_abandoned_job_on_last_attempt_fails_and_is_reported(service, group, ledger, record_events):
    job_id = service.send_message(group.cid, group.b, "@Aria hello")["job_ids"][0]
    rec = record_events(group.cid)
    host = AppHost(service, [ResponseApp(service), CompressionApp(service)])

    # a worker claimed every attempt and then died each time
    for attempt in (1, 2, 3):
        claimed = service.job_queue.claim_next("dead-worker")
        assert [(j["job_id"], j["attempts"]) for j in claimed] == [(job_id, attempt)]
        _stall(service, job_id)
        service.job_queue.requeue_stale(300, on_exhausted=host.fail_abandoned)

    job = service.get_job(job_id)
    assert (job["state"], job["status"], job["attempts"]) == ("FAILED", "job_abandoned", 3)
    assert service.job_queue.claim_next("w") == []
    service.pump_events()
    failed = rec.of_type("response_failed")
    assert len(failed) == 1
    assert failed[0].payload["code"] == "job_abandoned"
    assert ledger.charges == []
