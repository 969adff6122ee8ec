from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from sqlalchemy import update

from multichat.context_builder import ContextBuilder
from multichat.entities import SENDER_CHARACTER, SENDER_USER, ConversationMemory, Message


def _append(service, cid, sender_id, sender_type, text):
    session = service.SessionFactory()
    try:
        msg = service.message_log.append(session, cid, sender_id, sender_type, text)
        session.commit()
        return msg.sequence
    finally:
        session.close()


def _build(service, builder, cid, *, is_multi_user=True, up_to=None):
    session = service.SessionFactory()
    try:
        return builder.build(session, cid, is_multi_user=is_multi_user, up_to_sequence=up_to)
    finally:
        session.close()


def test_lines_carry_sender_names(service, group):
    _append(service, group.cid, group.a, SENDER_USER, "Where is the map?")
    _append(service, group.cid, group.aria, SENDER_CHARACTER, "Under the altar.")
    _append(service, group.cid, group.b, SENDER_USER, "Let's go.")

    ctx = _build(service, service.context_builder, group.cid)
    assert [line.attributed() for line in ctx.lines] == [
        "Alice: Where is the map?",
        "Aria: Under the altar.",
        "Bob: Let's go.",
    ]
    assert ctx.memory is None and ctx.pruned == 0


def test_departed_members_keep_their_name(service, group):
    _append(service, group.cid, group.b, SENDER_USER, "I have to go.")
    service.leave(group.cid, group.b)

    ctx = _build(service, service.context_builder, group.cid)
    assert ctx.lines[0].display_name == "Bob"


def test_multi_user_history_is_attributed(service, group):
    _append(service, group.cid, group.a, SENDER_USER, "Hi Aria")
    _append(service, group.cid, group.aria, SENDER_CHARACTER, "Hello Alice")
    _append(service, group.cid, group.b, SENDER_USER, "And me?")

    ctx = _build(service, service.context_builder, group.cid)
    msgs = service.context_builder.to_llm_messages(
        ctx, character_id=group.aria, character_name="Aria", persona="An archaeologist."
    )

    assert isinstance(msgs[0], SystemMessage)
    assert "Aria" in msgs[0].content and "An archaeologist." in msgs[0].content
    assert [type(m) for m in msgs[1:]] == [HumanMessage, AIMessage, HumanMessage]
    assert msgs[1].content == "Alice: Hi Aria"
    assert msgs[2].content == "Hello Alice"
    assert msgs[3].content == "Bob: And me?"


def test_single_user_history_is_plain(service):
    u = service.create_user("dave", "Dave")
    ch = service.create_character("Bram")
    conv = service.create_conversation(u["id"], character_ids=[ch["id"]])
    _append(service, conv["id"], u["id"], SENDER_USER, "Hello")
    _append(service, conv["id"], ch["id"], SENDER_CHARACTER, "Greetings")

    ctx = _build(service, service.context_builder, conv["id"], is_multi_user=False)
    msgs = service.context_builder.to_llm_messages(ctx, character_id=ch["id"], character_name="Bram", persona=None)

    assert msgs[1].content == "Hello"
    # the character spoke last, so it is prompted to continue
    assert isinstance(msgs[-1], HumanMessage)
    assert msgs[-1].content == "[Continue the conversation as Bram.]"


def test_other_characters_are_attributed(service, group):
    bram = service.create_character("Bram")
    _append(service, group.cid, bram["id"], SENDER_CHARACTER, "Not so fast.")

    ctx = _build(service, service.context_builder, group.cid, is_multi_user=False)
    msgs = service.context_builder.to_llm_messages(ctx, character_id=group.aria, character_name="Aria", persona=None)
    assert msgs[1].content == "Bram: Not so fast."


def test_nsfw_rule_follows_the_conversation(service, group):
    ctx = _build(service, service.context_builder, group.cid)
    sfw = service.context_builder.to_llm_messages(ctx, character_id=group.aria, character_name="Aria", persona=None)
    nsfw = service.context_builder.to_llm_messages(
        ctx, character_id=group.aria, character_name="Aria", persona=None, is_nsfw=True
    )
    assert sfw[0].content != nsfw[0].content


def test_memory_replaces_covered_messages(service, group):
    for i in range(5):
        _append(service, group.cid, group.a, SENDER_USER, f"old {i}")
    _append(service, group.cid, group.b, SENDER_USER, "fresh")

    session = service.SessionFactory()
    try:
        session.add(
            ConversationMemory(
                conversation_id=group.cid,
                summary="They argued about the map.",
                key_events=[{"description": "Map found", "participants": ["Alice"]}],
                character_states={},
                narrative_flags=[],
                start_message_id="m-1",
                end_message_id="m-5",
                start_sequence=1,
                end_sequence=5,
                message_count=5,
            )
        )
        session.commit()
    finally:
        session.close()

    ctx = _build(service, service.context_builder, group.cid)
    assert [line.content for line in ctx.lines] == ["fresh"]
    msgs = service.context_builder.to_llm_messages(ctx, character_id=group.aria, character_name="Aria", persona=None)
    assert "They argued about the map." in msgs[0].content
    assert "Map found (Alice)" in msgs[0].content

    # a context that ends before the memory does not use it
    early = _build(service, service.context_builder, group.cid, up_to=3)
    assert early.memory is None
    assert [line.sequence for line in early.lines] == [1, 2, 3]


def test_oldest_lines_are_pruned_to_the_token_budget(service, group):
    for i in range(10):
        _append(service, group.cid, group.a, SENDER_USER, f"{i} " + "x" * 200)

    small = ContextBuilder(service.message_log, max_context_tokens=120)
    ctx = _build(service, small, group.cid)
    assert ctx.pruned > 0
    assert ctx.lines[-1].sequence == 10
    assert len(ctx.lines) == 10 - ctx.pruned


def test_undecryptable_line_becomes_placeholder(service, group):
    _append(service, group.cid, group.a, SENDER_USER, "readable")
    _append(service, group.cid, group.b, SENDER_USER, "garbled")
    session = service.SessionFactory()
    try:
        session.execute(update(Message).where(Message.sequence == 2).values(content_encrypted="QUJD" * 8))
        session.commit()
    finally:
        session.close()

    ctx = _build(service, service.context_builder, group.cid)
    assert ctx.lines[0].content == "readable"
    assert ctx.lines[1].decrypt_failed is True
    assert ctx.lines[1].content == "[Decryption failed]"
