from multichat.entities import SENDER_CHARACTER, SENDER_USER
from multichat.responder_policy import (
    MODE_ALL,
    MODE_LAST_ADDRESSED,
    MODE_MENTIONS_ONLY,
    CharacterRef,
    RecentLine,
    find_mentions,
    select_responders,
)

ARIA = CharacterRef(id="ch-aria", name="Aria", position=0)
BRAM = CharacterRef(id="ch-bram", name="Bram", position=1)
CAST = [ARIA, BRAM]


def _ids(refs):
    return [r.id for r in refs]


def test_mentions_are_matched_by_name_boundary():
    assert _ids(find_mentions("@aria are you there?", CAST)) == ["ch-aria"]
    assert find_mentions("@Ariana hi", CAST) == []
    assert find_mentions("mail me at bob@Aria.com", CAST) == []


def test_mentions_win_and_keep_text_order():
    picked = select_responders("@Bram then @Aria, both of you", CAST, mode=MODE_MENTIONS_ONLY)
    assert _ids(picked) == ["ch-bram", "ch-aria"]


def test_single_character_always_answers():
    assert _ids(select_responders("hello", [ARIA], mode=MODE_MENTIONS_ONLY)) == ["ch-aria"]


def test_no_characters_means_no_responder():
    assert select_responders("@Aria hi", []) == []


def test_all_and_mentions_only_modes():
    assert _ids(select_responders("hello", CAST, mode=MODE_ALL)) == ["ch-aria", "ch-bram"]
    assert select_responders("hello", CAST, mode=MODE_MENTIONS_ONLY) == []


def test_last_addressed_follows_the_last_speaker():
    recent = [
        RecentLine(sender_id="ch-bram", sender_type=SENDER_CHARACTER, content="I found a door."),
        RecentLine(sender_id="u1", sender_type=SENDER_USER, content="@Aria look around"),
    ]
    assert _ids(select_responders("what now?", CAST, recent, mode=MODE_LAST_ADDRESSED)) == ["ch-bram"]


def test_last_addressed_uses_earlier_human_mention():
    recent = [
        RecentLine(sender_id="u2", sender_type=SENDER_USER, content="agreed"),
        RecentLine(sender_id="u1", sender_type=SENDER_USER, content="@Bram lead the way"),
    ]
    assert _ids(select_responders("go on", CAST, recent)) == ["ch-bram"]


def test_last_addressed_falls_back_to_first_character():
    assert _ids(select_responders("anyone?", [BRAM, ARIA])) == ["ch-aria"]


def test_selection_is_deterministic():
    recent = [RecentLine(sender_id="u1", sender_type=SENDER_USER, content="hmm")]
    runs = {tuple(_ids(select_responders("ok", CAST, recent))) for _ in range(20)}
    assert runs == {("ch-aria",)}
