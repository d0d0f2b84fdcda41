"""
Per-story single-flight guard.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from taleforge.common import ConcurrencyConflict


class StoryLockRegistry:
    """
    Track which stories are generating right now.

    A second caller for a story that is already generating fails immediately
    with :class:`ConcurrencyConflict` instead of waiting. Only stories in
    flight are kept, so the registry does not grow with the number of stories.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[str] = set()

    @property
    def held(self) -> frozenset[str]:
        with self._guard:
            return frozenset(self._held)

    def is_held(self, story_id: str) -> bool:
        with self._guard:
            return story_id in self._held

    @contextmanager
    def hold(self, story_id: str) -> Iterator[None]:
        with self._guard:
            if story_id in self._held:
                raise ConcurrencyConflict(story_id)
            self._held.add(story_id)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(story_id)
