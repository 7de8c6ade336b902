"""Keeps an entry's tag links in step with the tag names found in its content.

The join rows (:class:`~reflective.core.models.Link`) carry no unique
constraint; this module is what guarantees at most one link per
(entry, tag) pair. Every creation path checks for an existing link first, so
repeating a reconcile (after a retry or a partial failure) converges on the
same link set instead of duplicating rows.

Callers hold ``cache.writer()`` while reconciling.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from reflective.core.cache import LocalCache
from reflective.core.models import Entry, Link, Tag
from reflective.core.tags import random_tag_color
from reflective.errors import ConsistencyError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    """What a reconcile call changed."""
    success: bool
    added: List[Tag] = field(default_factory=list)
    removed: List[Tag] = field(default_factory=list)
    created_tags: List[Tag] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def normalize_tag_names(names: Iterable[str]) -> List[str]:
    """Trim, drop empties and fold duplicates that differ only by case (first spelling wins)."""
    seen = set()
    normalized = []
    for name in names:
        cleaned = name.strip()
        if not cleaned:
            continue
        folded = cleaned.casefold()
        if folded in seen:
            continue
        seen.add(folded)
        normalized.append(cleaned)
    return normalized


class AssociationReconciler:
    """Finds or creates tags and converges an entry's links onto them."""

    def __init__(self, cache: LocalCache, color_factory: Callable[[], str] = random_tag_color):
        self.cache = cache
        self.color_factory = color_factory

    def reconcile(self, entry: Entry, desired_names: Iterable[str]) -> ReconcileOutcome:
        """Make the entry's links match ``desired_names`` exactly."""
        try:
            if self.cache.get(Entry, entry.id) is None:
                raise ConsistencyError(f"Entry {entry.id} is not in the cache")

            created: List[Tag] = []
            target = self.find_or_create_tags(desired_names, created=created)
            added, removed = self.set_links(entry, target)
            return ReconcileOutcome(
                success=True, added=added, removed=removed, created_tags=created
            )
        except ConsistencyError as e:
            logger.warning(f"Tag reconcile failed: {e}")
            return ReconcileOutcome(success=False, error=str(e))

    def set_links(self, entry: Entry, tags: Sequence[Tag]) -> Tuple[List[Tag], List[Tag]]:
        """Converge the entry's links onto exactly ``tags``. Returns (added, removed)."""
        target_ids = {tag.id for tag in tags}
        current = self.cache.links_for_entry(entry)
        current_ids = {link.tag_id for link in current}

        removed = []
        kept = set()
        for link in current:
            if link.tag_id in target_ids and link.tag_id not in kept:
                kept.add(link.tag_id)
                continue
            # Obsolete, or a duplicate of a pair already kept
            self.cache.delete(link)
            tag = self.cache.get(Tag, link.tag_id)
            if tag is not None and link.tag_id not in target_ids and tag not in removed:
                removed.append(tag)

        added = []
        for tag in tags:
            if tag.id not in current_ids and tag not in added:
                added.append(tag)
        self.link_many([(tag, entry) for tag in added])

        if added or removed:
            logger.debug(
                f"Relinked entry {entry.id}: +{[t.name for t in added]} -{[t.name for t in removed]}"
            )
        return added, removed

    def find_or_create_tags(
        self, names: Iterable[str], created: Optional[List[Tag]] = None
    ) -> List[Tag]:
        """Resolve names to tags case-insensitively, creating the missing ones.

        One name index is built up front and extended as tags are created, so a
        batch never creates two tags whose names differ only by case.
        """
        by_name: Dict[str, Tag] = {}
        for tag in sorted(self.cache.objects(Tag), key=lambda t: t.created_at):
            by_name.setdefault(tag.name.casefold(), tag)

        tags = []
        for name in normalize_tag_names(names):
            folded = name.casefold()
            tag = by_name.get(folded)
            if tag is None:
                tag = Tag.new(name, color=self.color_factory())
                self.cache.add(tag)
                by_name[folded] = tag
                if created is not None:
                    created.append(tag)
                logger.debug(f"Created tag {name!r}")
            tags.append(tag)
        return tags

    def link(self, tag: Tag, entry: Entry) -> Link:
        """Return the link for this pair, creating it if there is none."""
        self._require(tag, entry)
        existing = self.cache.find_link(entry, tag)
        if existing is not None:
            return existing
        link = Link.new(entry, tag)
        self.cache.add(link)
        return link

    def unlink(self, tag: Tag, entry: Entry) -> bool:
        """Remove every link for this pair. Returns False if there was none."""
        links = [l for l in self.cache.links_for_entry(entry) if l.tag_id == tag.id]
        for link in links:
            self.cache.delete(link)
        return bool(links)

    def link_many(self, pairs: Sequence[Tuple[Tag, Entry]]) -> List[Link]:
        """Batch find-or-create: one lookup of existing links, then create the rest.

        Returns the links for every distinct pair, existing ones included.
        """
        if not pairs:
            return []
        for tag, entry in pairs:
            self._require(tag, entry)

        wanted = {(entry.id, tag.id) for tag, entry in pairs}
        existing: Dict[Tuple, Link] = {}
        for entry_id in {entry_id for entry_id, _ in wanted}:
            for link in self.cache.graph.links_for_entry(entry_id):
                if link.pair in wanted:
                    existing.setdefault(link.pair, link)

        links = list(existing.values())
        for tag, entry in pairs:
            pair = (entry.id, tag.id)
            if pair in existing:
                continue
            link = Link.new(entry, tag)
            self.cache.add(link)
            existing[pair] = link
            links.append(link)
        return links

    def unlink_many(self, pairs: Sequence[Tuple[Tag, Entry]]) -> int:
        """Batch removal. Returns the number of links deleted."""
        wanted = {(entry.id, tag.id) for tag, entry in pairs}
        doomed = [
            link
            for entry_id in {entry_id for entry_id, _ in wanted}
            for link in self.cache.graph.links_for_entry(entry_id)
            if link.pair in wanted
        ]
        for link in doomed:
            self.cache.delete(link)
        return len(doomed)

    def _require(self, tag: Tag, entry: Entry) -> None:
        if self.cache.get(Entry, entry.id) is None:
            raise ConsistencyError(f"Entry {entry.id} is not in the cache")
        if self.cache.get(Tag, tag.id) is None:
            raise ConsistencyError(f"Tag {tag.name!r} is not in the cache")
