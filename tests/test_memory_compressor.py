import json

import pytest
from sqlalchemy import func, select

from multichat.entities import SENDER_USER, ConversationMemory
from multichat.memory_compressor import STATE_FAILED, STATE_IDLE, MemoryCompressor


def _fill(service, cid, sender, n, prefix="msg"):
    session = service.SessionFactory()
    try:
        for i in range(n):
            service.message_log.append(session, cid, sender, SENDER_USER, f"{prefix} {i}")
        session.commit()
    finally:
        session.close()


def _memory_rows(service, cid):
    session = service.SessionFactory()
    try:
        return session.execute(
            select(func.count()).select_from(ConversationMemory).where(ConversationMemory.conversation_id == cid)
        ).scalar_one()
    finally:
        session.close()


@pytest.fixture
def small_compressor(service, summary_llm):
    return MemoryCompressor(
        service.SessionFactory,
        service.context_builder,
        service.outbox,
        summary_llm,
        threshold=3,
        retry_gap=5,
    )


def test_compress_covers_everything_so_far(service, group, summary_llm, record_events):
    rec = record_events(group.cid)
    _fill(service, group.cid, group.a, 6)

    out = service.compressor.compress(group.cid)
    service.pump_events()

    assert out["status"] == "complete"
    memory = out["memory"]
    assert (memory["start_sequence"], memory["end_sequence"], memory["message_count"]) == (1, 6, 6)
    assert memory["summary"] == "Alice and Bob explored the ruins with Aria."
    assert memory["narrative_flags"] == ["the map is cursed"]
    assert "Alice: msg 0" in summary_llm.prompts[0]

    started, complete = rec.of_type("memory_compression_started"), rec.of_type("memory_compression_complete")
    assert started[0].payload == {"start_sequence": 1, "end_sequence": 6}
    assert complete[0].payload["status"] == "complete"
    assert service.latest_memory(group.cid, group.c)["id"] == memory["id"]


def test_second_compress_is_a_no_op(service, group, summary_llm, record_events):
    _fill(service, group.cid, group.a, 4)
    first = service.compressor.compress(group.cid)
    service.pump_events()
    rec = record_events(group.cid)

    second = service.compressor.compress(group.cid)
    service.pump_events()

    assert first["status"] == "complete"
    assert second["status"] == "already_covered"
    assert _memory_rows(service, group.cid) == 1
    assert len(summary_llm.prompts) == 1
    assert rec.drain() == []


def test_next_memory_starts_after_the_previous_one(service, group, summary_llm):
    _fill(service, group.cid, group.a, 4)
    service.compressor.compress(group.cid)
    _fill(service, group.cid, group.b, 3, prefix="later")

    out = service.compressor.compress(group.cid, up_to_sequence=6)
    assert (out["memory"]["start_sequence"], out["memory"]["end_sequence"]) == (5, 6)
    assert "Alice and Bob explored the ruins with Aria." in summary_llm.prompts[1]
    assert "Bob: later 2" not in summary_llm.prompts[1]


def test_range_with_only_deleted_messages_is_empty(service, group):
    _fill(service, group.cid, group.a, 1)
    msg = service.list_messages(group.cid, group.a)[0]
    service.delete_message(group.cid, msg["id"], group.a)

    assert service.compressor.compress(group.cid)["status"] == "empty"
    assert _memory_rows(service, group.cid) == 0


def test_failure_backs_off_until_retry_gap(service, group, summary_llm, small_compressor, record_events):
    _fill(service, group.cid, group.a, 4)
    assert small_compressor.should_compress(group.cid)

    rec = record_events(group.cid)
    summary_llm.fail = True
    out = small_compressor.compress(group.cid)
    service.pump_events()

    assert out["status"] == "failed"
    assert small_compressor.get_state(group.cid) == STATE_FAILED
    assert rec.of_type("memory_compression_failed")[0].payload["start_sequence"] == 1
    assert _memory_rows(service, group.cid) == 0

    # failed at position 4: no retry before position 9
    _fill(service, group.cid, group.a, 4)
    assert not small_compressor.should_compress(group.cid)
    _fill(service, group.cid, group.a, 1)
    assert small_compressor.should_compress(group.cid)

    summary_llm.fail = False
    assert small_compressor.compress(group.cid)["status"] == "complete"
    assert small_compressor.get_state(group.cid) == STATE_IDLE


def test_summary_without_text_is_a_failure(service, group, summary_llm):
    _fill(service, group.cid, group.a, 2)
    summary_llm.response = json.dumps({"keyEvents": []})

    assert service.compressor.compress(group.cid)["status"] == "failed"
    assert _memory_rows(service, group.cid) == 0


def test_fenced_summary_is_accepted(service, group, summary_llm):
    _fill(service, group.cid, group.a, 2)
    summary_llm.response = '```json\n{"summary": "Short recap", "keyEvents": "one thing"}\n```'

    out = service.compressor.compress(group.cid)
    assert out["status"] == "complete"
    assert out["memory"]["summary"] == "Short recap"
    assert out["memory"]["key_events"] == ["one thing"]


def test_racing_compressions_store_one_memory(service, group, summary_llm):
    _fill(service, group.cid, group.a, 5)
    rival = MemoryCompressor(service.SessionFactory, service.context_builder, service.outbox, summary_llm)

    class RacingSummary:
        """Lets the rival finish the same range while this run is still summarizing."""

        def __init__(self):
            self.raced = False

        def invoke(self, prompt, *, retries=3):
            if not self.raced:
                self.raced = True
                assert rival.compress(group.cid)["status"] == "complete"
            return summary_llm.response

        def get_accrued_usage(self):
            return {}

    racing = RacingSummary()
    loser = MemoryCompressor(service.SessionFactory, service.context_builder, service.outbox, lambda: racing)

    assert loser.compress(group.cid)["status"] == "already_covered"
    assert _memory_rows(service, group.cid) == 1
    assert loser.get_state(group.cid) == STATE_IDLE


def test_request_compression_is_deduplicated(service, group):
    _fill(service, group.cid, group.a, 3)
    first = service.compressor.request_compression(service.job_queue, group.cid, up_to_sequence=3)
    second = service.compressor.request_compression(service.job_queue, group.cid, up_to_sequence=3)

    assert first is not None
    assert second is None
    job = service.get_job(first)
    assert job["kind"] == "compression"
    assert job["payload"] == {"up_to_sequence": 3}
