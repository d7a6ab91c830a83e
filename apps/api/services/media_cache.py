"""
Bounded cache of prepared media handles keyed by source URL.

The cache owns every handle it hands out. Handles are prepared in the
background (playability, duration and orientation come from an ffmpeg probe
running in a worker thread); callers asking for the same URL while it is still
preparing wait on the same in-flight task. Least-recently-used entries beyond
``MEDIA_CACHE_MAX_SIZE`` are released whenever a new URL is inserted.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from config import settings
from multimodal.video import MediaProbe, probe_media

logger = logging.getLogger(__name__)


class ReadyState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FALLBACK = "fallback"
    RELEASED = "released"


@dataclass(eq=False)
class MediaHandle:
    source_url: str
    ready_state: ReadyState = ReadyState.PENDING
    is_playable: bool = False
    duration: float = 0.0
    orientation: str = "unknown"
    position: float = 0.0
    playing: bool = False

    @property
    def released(self) -> bool:
        return self.ready_state == ReadyState.RELEASED


Preparer = Callable[[str], Awaitable[MediaProbe]]


async def probe_in_thread(url: str) -> MediaProbe:
    return await asyncio.to_thread(probe_media, url)


class MediaHandleCache:
    def __init__(self, max_size: Optional[int] = None, preparer: Optional[Preparer] = None):
        self.max_size = int(settings.MEDIA_CACHE_MAX_SIZE if max_size is None else max_size)
        self._prepare_fn = preparer or probe_in_thread
        self._handles: "OrderedDict[str, MediaHandle]" = OrderedDict()
        self._preparing: Dict[str, asyncio.Task] = {}
        self._audible_url: Optional[str] = None

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, url: str) -> bool:
        return url in self._handles

    @property
    def audible_url(self) -> Optional[str]:
        return self._audible_url

    def urls(self) -> List[str]:
        """Cached URLs from least to most recently used."""
        return list(self._handles.keys())

    def peek(self, url: str) -> Optional[MediaHandle]:
        return self._handles.get(url)

    async def get_or_create(self, url: str) -> MediaHandle:
        handle = self._handles.get(url)
        if handle is None:
            handle = self._register(url)
        else:
            self._handles.move_to_end(url)

        task = self._preparing.get(url)
        if task is not None:
            # wait() instead of awaiting the task so an eviction mid-preparation
            # hands back the released handle rather than raising CancelledError.
            await asyncio.wait({task})
        return handle

    def preload(self, url: str) -> Optional[asyncio.Task]:
        """Start preparing ``url`` in the background; never blocks the caller."""
        if url in self._handles:
            return self._preparing.get(url)
        self._register(url)
        return self._preparing.get(url)

    async def play(self, url: str) -> MediaHandle:
        handle = await self.get_or_create(url)
        previous = self._audible_url
        if previous is not None and previous != url:
            self.stop(previous)
        if handle.released:
            return handle
        handle.playing = True
        self._audible_url = url
        return handle

    def stop(self, url: str) -> None:
        handle = self._handles.get(url)
        if handle is not None:
            handle.playing = False
            handle.position = 0.0
        if self._audible_url == url:
            self._audible_url = None

    def evict_lru(self, max_size: Optional[int] = None) -> List[str]:
        limit = max(int(self.max_size if max_size is None else max_size), 0)
        evicted: List[str] = []
        while len(self._handles) > limit:
            url, handle = self._handles.popitem(last=False)
            self._release(url, handle)
            evicted.append(url)
        if evicted:
            logger.debug("Evicted %d media handles: %s", len(evicted), evicted)
        return evicted

    def cleanup(self, url: str) -> bool:
        handle = self._handles.pop(url, None)
        if handle is None:
            return False
        self._release(url, handle)
        return True

    async def shutdown(self) -> None:
        tasks = list(self._preparing.values())
        for url, handle in list(self._handles.items()):
            self._release(url, handle)
        self._handles.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _register(self, url: str) -> MediaHandle:
        handle = MediaHandle(source_url=url)
        self._handles[url] = handle
        self._preparing[url] = asyncio.create_task(self._prepare(handle))
        self.evict_lru()
        return handle

    def _release(self, url: str, handle: MediaHandle) -> None:
        self.stop(url)
        task = self._preparing.pop(url, None)
        if task is not None and not task.done():
            task.cancel()
        handle.ready_state = ReadyState.RELEASED

    async def _prepare(self, handle: MediaHandle) -> None:
        url = handle.source_url
        try:
            probe = await self._prepare_fn(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Media preparation failed for %s, using fallback handle: %s", url, exc)
            if not handle.released:
                handle.is_playable = True
                handle.ready_state = ReadyState.FALLBACK
        else:
            if not handle.released:
                handle.is_playable = probe.playable
                handle.duration = probe.duration
                handle.orientation = probe.orientation
                handle.ready_state = ReadyState.READY
        finally:
            if self._preparing.get(url) is asyncio.current_task():
                self._preparing.pop(url, None)
