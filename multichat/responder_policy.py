# multichat/responder_policy.py
"""
Which characters answer a human message.

Pure functions of (message, attached characters, recent history, mode):
the same inputs always give the same responders, in the same order.

    explicit @mentions  -> those characters, by first appearance
    one character       -> that character
    last_addressed      -> newest character that spoke or was @mentioned by a human,
                           else the first attached character
    all                 -> every attached character
    mentions_only       -> nobody
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from multichat.entities import SENDER_CHARACTER, SENDER_USER

MODE_LAST_ADDRESSED = "last_addressed"
MODE_ALL = "all"
MODE_MENTIONS_ONLY = "mentions_only"


@dataclass(frozen=True)
class CharacterRef:
    id: str
    name: str
    position: int = 0


@dataclass(frozen=True)
class RecentLine:
    sender_id: str
    sender_type: str
    content: str


def _mention_pattern(name: str) -> re.Pattern:
    return re.compile(r"(?<!\w)@" + re.escape(name) + r"(?!\w)", re.IGNORECASE)


def find_mentions(content: str, characters: Iterable[CharacterRef]) -> List[CharacterRef]:
    """Mentioned characters ordered by where their first mention appears."""
    hits = []
    for ch in characters:
        if not ch.name:
            continue
        m = _mention_pattern(ch.name).search(content or "")
        if m is not None:
            hits.append((m.start(), ch.position, ch))
    hits.sort(key=lambda h: (h[0], h[1]))
    return [h[2] for h in hits]


def select_responders(
    content: str,
    characters: Sequence[CharacterRef],
    recent_lines: Sequence[RecentLine] = (),
    mode: str = MODE_LAST_ADDRESSED,
) -> List[CharacterRef]:
    """
    recent_lines must be newest first and must not include `content` itself.
    """
    ordered = sorted(characters, key=lambda c: (c.position, c.id))
    if not ordered:
        return []

    mentioned = find_mentions(content, ordered)
    if mentioned:
        return mentioned
    if len(ordered) == 1:
        return [ordered[0]]

    if mode == MODE_ALL:
        return list(ordered)
    if mode == MODE_MENTIONS_ONLY:
        return []

    by_id = {c.id: c for c in ordered}
    for line in recent_lines:
        if line.sender_type == SENDER_CHARACTER and line.sender_id in by_id:
            return [by_id[line.sender_id]]
        if line.sender_type == SENDER_USER:
            earlier = find_mentions(line.content, ordered)
            if earlier:
                return [earlier[0]]
    return [ordered[0]]
