"""Photo acquisition for pins.

A pin starts out *new*: its first search widens the radius rung by rung
until one full page of photos turns up (or the ladder runs out). Once a full
page has been found the pin is *established* and every further search simply
advances to the next result page, wrapping back to page 1 after the last one.
All of this state lives on the pin row, so it survives restarts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterable
from typing import Any, Protocol

import radius_ladder
from config import DEFAULT_FLICKR_STATIC_URL
from data_access import UNKNOWN_DISTANCE_M, DataAccess, PersistenceFailed, Photo, Pin
from events import (
    PHOTO_ADDED,
    PHOTO_DELETED,
    PHOTO_IMAGE_READY,
    PIN_CHANGED,
    PIN_DELETED,
    EventEmitter,
)
from image_fetcher import FetchFailed
from imgio import sniff_content_type
from observability import context, log_exc, record_photo_search, record_radius_expansion
from osm_utils import haversine_distance_m
from photo_client import PHOTOS_PER_PAGE, SearchFailed, SearchItem, SearchResult, photo_url

logger = logging.getLogger(__name__)


class PhotoSearcher(Protocol):
    async def search(self, lat: float, lon: float, radius: float, page: int = 1) -> SearchResult: ...


class ImageSource(Protocol):
    async def fetch(self, url: str) -> bytes: ...


class PinPhotoController:
    def __init__(
        self,
        data: DataAccess,
        searcher: PhotoSearcher,
        fetcher: ImageSource,
        *,
        events: EventEmitter | None = None,
        static_url: str = DEFAULT_FLICKR_STATIC_URL,
    ) -> None:
        self.data = data
        self.searcher = searcher
        self.fetcher = fetcher
        self.events = events or EventEmitter()
        self._static_url = static_url
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, set[asyncio.Task[Any]]] = {}

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------
    def _lock_for(self, pin_id: str) -> asyncio.Lock:
        lock = self._locks.get(pin_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[pin_id] = lock
        return lock

    def _spawn(self, pin_id: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        bucket = self._tasks.setdefault(pin_id, set())
        bucket.add(task)

        def _forget(done: asyncio.Task[Any]) -> None:
            tasks = self._tasks.get(pin_id)
            if tasks is None:
                return
            tasks.discard(done)
            if not tasks:
                self._tasks.pop(pin_id, None)

        task.add_done_callback(_forget)
        return task

    def _all_tasks(self) -> list[asyncio.Task[Any]]:
        return [task for tasks in self._tasks.values() for task in tasks]

    async def wait_idle(self) -> None:
        """Wait until every scheduled search and image fetch has finished."""

        current = asyncio.current_task()
        while True:
            pending = [task for task in self._all_tasks() if task is not current]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _cancel(self, tasks: Iterable[asyncio.Task[Any]]) -> None:
        current = asyncio.current_task()
        targets = [task for task in tasks if task is not current and not task.done()]
        for task in targets:
            task.cancel()
        if targets:
            await asyncio.gather(*targets, return_exceptions=True)

    async def aclose(self) -> None:
        await self._cancel(self._all_tasks())
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def _pin_changed(self, pin: Pin | None) -> None:
        if pin is not None:
            await self.events.emit(PIN_CHANGED, pin=pin)

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------
    def schedule_find_photos(self, pin_id: str) -> asyncio.Task[int]:
        return self._spawn(pin_id, self._find_photos_in_background(pin_id))

    async def _find_photos_in_background(self, pin_id: str) -> int:
        try:
            return await self.find_photos(pin_id)
        except PersistenceFailed as exc:
            with context(pin_id=pin_id):
                log_exc("find_photos_persistence_failed", exc)
            return 0

    async def find_photos(self, pin_id: str) -> int:
        """Run one acquisition step for the pin; return how many photos were attached."""

        with context(pin_id=pin_id):
            async with self._lock_for(pin_id):
                pin = self.data.get_pin(pin_id)
                if pin is None:
                    logger.warning("PHOTOS find skipped, pin %s does not exist", pin_id)
                    self._locks.pop(pin_id, None)
                    return 0
                if pin.is_new:
                    return await self._expand_new_pin(pin)
                return await self._next_page(pin)

    async def new_collection(self, pin_id: str) -> int:
        """Replace the pin's album with the next page of results."""

        with context(pin_id=pin_id):
            async with self._lock_for(pin_id):
                pin = self.data.get_pin(pin_id)
                if pin is None:
                    logger.warning("PHOTOS refresh skipped, pin %s does not exist", pin_id)
                    self._locks.pop(pin_id, None)
                    return 0
                removed = self.data.delete_photos_for_pin(pin_id)
                logger.info("PHOTOS refresh pin=%s removed=%s", pin_id, removed)
                pin = self.data.get_pin(pin_id)
                if pin is None:
                    return 0
                await self._pin_changed(pin)
                if pin.is_new:
                    return await self._expand_new_pin(pin)
                return await self._next_page(pin)

    async def _search(self, pin: Pin, page: int) -> SearchResult:
        radius = radius_ladder.radius_at(pin.radius_index)
        return await self.searcher.search(pin.latitude, pin.longitude, radius, page)

    async def _next_page(self, pin: Pin) -> int:
        page = pin.current_page + 1
        if page > pin.number_of_pages:
            page = 1
        updated = self.data.update_pin_state(pin.id, current_page=page)
        if updated is None:
            return 0
        pin = updated
        try:
            result = await self._search(pin, page)
        except SearchFailed as exc:
            record_photo_search("established", "failed")
            logger.warning(
                "PHOTOS established search failed pin=%s page=%s error=%s; pin marked new",
                pin.id,
                page,
                exc.cause,
            )
            await self._pin_changed(
                self.data.update_pin_state(pin.id, is_new=True, current_page=1)
            )
            return 0
        record_photo_search("established", "ok")
        updated = self.data.update_pin_state(pin.id, number_of_pages=result.total_pages)
        if updated is None:
            return 0
        await self._pin_changed(updated)
        return await self._attach(updated, result.items)

    async def _expand_new_pin(self, pin: Pin) -> int:
        while True:
            try:
                result = await self._search(pin, 1)
            except SearchFailed as exc:
                record_photo_search("new", "failed")
                logger.warning(
                    "PHOTOS new-pin search failed pin=%s radius_index=%s error=%s",
                    pin.id,
                    pin.radius_index,
                    exc.cause,
                )
                return 0
            record_photo_search("new", "ok")
            found = len(result.items)

            if found >= PHOTOS_PER_PAGE:
                updated = self.data.update_pin_state(
                    pin.id,
                    is_new=False,
                    current_page=1,
                    number_of_pages=result.total_pages,
                )
                if updated is None:
                    return 0
                logger.info(
                    "PHOTOS pin established pin=%s radius_index=%s pages=%s",
                    pin.id,
                    updated.radius_index,
                    updated.number_of_pages,
                )
                await self._pin_changed(updated)
                return await self._attach(updated, result.items)

            if radius_ladder.is_last(pin.radius_index):
                updated = self.data.update_pin_state(pin.id, number_of_pages=result.total_pages)
                if updated is None:
                    return 0
                logger.info(
                    "PHOTOS radius ladder exhausted pin=%s found=%s", pin.id, found
                )
                await self._pin_changed(updated)
                return await self._attach(updated, result.items)

            next_index = radius_ladder.advance(pin.radius_index)
            updated = self.data.update_pin_state(pin.id, radius_index=next_index)
            if updated is None:
                return 0
            record_radius_expansion()
            logger.info(
                "PHOTOS widening search pin=%s found=%s radius=%s",
                pin.id,
                found,
                radius_ladder.radius_at(next_index),
            )
            await self._pin_changed(updated)
            pin = updated

    async def _attach(self, pin: Pin, items: list[SearchItem]) -> int:
        attached = 0
        for item in items:
            if item.has_location:
                distance = haversine_distance_m(
                    pin.latitude, pin.longitude, item.latitude, item.longitude  # type: ignore[arg-type]
                )
            else:
                distance = UNKNOWN_DISTANCE_M
            url = photo_url(item.server, item.remote_id, item.secret, base_url=self._static_url)
            try:
                photo = self.data.add_photo(
                    pin.id,
                    remote_id=item.remote_id,
                    url=url,
                    title=item.title,
                    distance_m=distance,
                )
            except PersistenceFailed as exc:
                log_exc("photo_attach_failed", exc)
                continue
            if photo is None:
                continue
            attached += 1
            await self.events.emit(PHOTO_ADDED, pin_id=pin.id, photo=photo)
            self._spawn(pin.id, self._prefetch(photo))
        logger.info("PHOTOS attached pin=%s count=%s of=%s", pin.id, attached, len(items))
        return attached

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    async def _fetch_and_store(self, photo: Photo) -> Photo | None:
        data = await self.fetcher.fetch(photo.url)
        content_type = sniff_content_type(data)
        if content_type is None:
            raise FetchFailed(f"payload from {photo.url} is not an image")
        stored = self.data.store_image(photo.id, data, content_type)
        if stored is None:
            logger.info("PHOTO image dropped, photo %s no longer exists", photo.id)
            return None
        await self.events.emit(PHOTO_IMAGE_READY, pin_id=stored.pin_id, photo=stored)
        return stored

    async def _prefetch(self, photo: Photo) -> None:
        with context(pin_id=photo.pin_id, photo_id=photo.id):
            try:
                await self._fetch_and_store(photo)
            except FetchFailed as exc:
                logger.warning("PHOTO prefetch failed id=%s error=%s", photo.id, exc.cause)
            except PersistenceFailed as exc:
                log_exc("photo_image_store_failed", exc)

    async def load_image(self, photo_id: str) -> Photo | None:
        """Return the photo with its bytes, fetching them now if still missing.

        ``FetchFailed`` propagates to the caller.
        """

        photo = self.data.get_photo(photo_id, with_image=True)
        if photo is None or photo.image_data is not None:
            return photo
        with context(pin_id=photo.pin_id, photo_id=photo.id):
            return await self._fetch_and_store(photo)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    async def delete_photo(self, photo_id: str) -> Photo | None:
        photo = self.data.delete_photo(photo_id)
        if photo is None:
            return None
        await self.events.emit(PHOTO_DELETED, pin_id=photo.pin_id, photo=photo)
        await self._pin_changed(self.data.get_pin(photo.pin_id))
        return photo

    async def delete_pin(self, pin_id: str) -> bool:
        await self._cancel(self._tasks.pop(pin_id, set()))
        deleted = self.data.delete_pin(pin_id)
        # A holder still running finds the pin gone and stops on its own.
        self._locks.pop(pin_id, None)
        if deleted:
            await self.events.emit(PIN_DELETED, pin_id=pin_id)
        return deleted


__all__ = ["PinPhotoController", "PhotoSearcher", "ImageSource"]
