"""Pick the next media item when looped playback reaches the end of one."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from .models import MediaItem, StatusUpdate, StreamProfile
from .storage import MediaStore, ProfileStore, StatusStore

logger = logging.getLogger(__name__)

StartCallback = Callable[[int, StreamProfile], Awaitable[bool]]


class PlaylistAdvancer:
    def __init__(self, media_store: MediaStore, status_store: StatusStore, profile_store: ProfileStore):
        self.media_store = media_store
        self.status_store = status_store
        self.profile_store = profile_store
        self.snapshot: List[MediaItem] = []
        self.cursor = 0

    async def refresh(self) -> None:
        try:
            items = await self.media_store.list_media()
        except Exception as exc:  # noqa: BLE001
            logger.error("Error loading playlist: %s", exc)
            items = []
        self.snapshot = sorted(items, key=lambda item: (item.playlist_order, item.id))
        logger.info("Loaded playlist with %d videos", len(self.snapshot))

    def next_item(self, current_item_id: Optional[int]) -> Optional[MediaItem]:
        """Move the cursor one step past ``current_item_id``, wrapping at the end.

        An item missing from the snapshot restarts the playlist from the top;
        without a current item the in-memory cursor is used as is.
        """
        if not self.snapshot:
            return None
        if current_item_id is not None:
            self.cursor = next(
                (index for index, item in enumerate(self.snapshot) if item.id == current_item_id),
                -1,
            )
        self.cursor = (self.cursor + 1) % len(self.snapshot)
        return self.snapshot[self.cursor]

    async def advance(self, start: StartCallback) -> Optional[MediaItem]:
        if not self.snapshot:
            return None
        try:
            status = await self.status_store.get_status()
            item = self.next_item(status.current_item_id)
            if item is None:
                return None
            logger.info("Playing next video: %s", item.title)
            try:
                await self.status_store.update_status(StatusUpdate(current_item_id=item.id))
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to persist current video %s: %s", item.id, exc)

            profile = await self.profile_store.get_active_profile()
            if profile is None:
                logger.info("No active stream configuration, playlist advance stops at video %s", item.id)
                return None
            if not await start(item.id, profile):
                logger.warning("Next video %s could not be started", item.id)
            return item
        except Exception as exc:  # noqa: BLE001
            logger.error("Error playing next video: %s", exc)
            return None
