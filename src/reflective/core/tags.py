"""Hashtag extraction from entry content.

A tag is written ``#name`` where name is a run of word characters, hyphens or
underscores. Writing ``\\#`` keeps a literal hash sign that is never read as a
tag; :func:`display_content` turns it back into ``#`` for reading.
"""

import random
import re
from typing import Iterator, Optional

TAG_SIGIL = "#"
ESCAPED_SIGIL = "\\" + TAG_SIGIL
ESCAPE_PLACEHOLDER = "ESCAPED_HASHTAG_PLACEHOLDER"

TAG_PATTERN = re.compile(r"#([\w-]+)")


class TagNames:
    """Tag names found in a piece of content.

    Iterating rescans the content each time, yielding every distinct name
    once in order of first appearance. Names are compared case-sensitively
    here; callers fold case themselves.
    """

    def __init__(self, content: Optional[str]):
        self.content = content or ""

    def __iter__(self) -> Iterator[str]:
        masked = self.content.replace(ESCAPED_SIGIL, ESCAPE_PLACEHOLDER)
        seen = set()
        for match in TAG_PATTERN.finditer(masked):
            name = match.group(1)
            if name and name not in seen:
                seen.add(name)
                yield name

    def __contains__(self, name: object) -> bool:
        return any(found == name for found in self)

    def __repr__(self) -> str:
        return f"TagNames({list(self)!r})"


def extract_tags(content: Optional[str]) -> TagNames:
    return TagNames(content)


def display_content(content: Optional[str]) -> str:
    """Content as shown to a reader: escaped hash signs become literal ones."""
    if not content:
        return ""
    return content.replace(ESCAPED_SIGIL, TAG_SIGIL)


def random_tag_color(rng: Optional[random.Random] = None) -> str:
    """Random ``#RRGGBB`` color, each channel kept between 20% and 90%."""
    rng = rng or random
    channels = (round(rng.uniform(0.2, 0.9) * 255) for _ in range(3))
    return "#" + "".join(f"{value:02X}" for value in channels)
