"""Exceptions raised by memorylane.

Structural problems (no storage root, unknown targets, a rename that failed
half-way) raise.  Content problems (bad YAML, dangling canvas slugs) never do:
the indexer absorbs them into IndexResult.errors / warnings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memorylane.writer import RenameState


class MemoryLaneError(Exception):
    """Base class for all memorylane errors."""


class StorageNotConfiguredError(MemoryLaneError):
    """No storage root has been selected."""

    def __init__(self, msg: str = "No storage folder configured") -> None:
        super().__init__(msg)


class NotFoundError(MemoryLaneError):
    pass


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event not found or not file-based: {event_id}")


class ItemNotFoundError(NotFoundError):
    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item not found or not file-based: {item_id}")


class RebuildInProgressError(MemoryLaneError):
    """A full rebuild holds the index store; writes are rejected until it ends."""

    def __init__(self) -> None:
        super().__init__("Full index rebuild in progress; try again when it finishes")


class InvalidUpdateError(MemoryLaneError):
    pass


class ItemRenameError(MemoryLaneError):
    """A caption-driven slug rename stopped part-way.

    The index is not touched when this is raised.  Files may be left with the
    markdown renamed but the media not (or vice versa); a full rebuild
    reconciles the index with whatever is on disk.
    """

    def __init__(
        self,
        item_id: str,
        state: RenameState,
        old_slug: str,
        new_slug: str,
        cause: BaseException,
    ) -> None:
        self.item_id = item_id
        self.state = state
        self.old_slug = old_slug
        self.new_slug = new_slug
        super().__init__(
            f"Rename {old_slug} -> {new_slug} failed while {state.value}: {cause}. "
            f"Run a full reindex to reconcile."
        )
