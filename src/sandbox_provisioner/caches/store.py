"""Keyed cache mounts shared across builds."""

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Sequence

from sandbox_provisioner.config import default_cache_dir, load_settings
from sandbox_provisioner.errors import InvalidSpec
from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.types import CacheBinding, CacheMount, CacheScope
from sandbox_provisioner.utils.generic import safe_name

logger = get_logger(__name__)


@dataclass
class CacheHandle:
    """Exclusive hold on one cache mount"""

    mount: CacheMount
    owner: str = ""
    released: bool = False
    lock: Optional[asyncio.Lock] = field(default=None, repr=False)

    @property
    def key(self) -> str:
        return self.mount.key

    @property
    def path(self) -> Path:
        return self.mount.mount_path


class CacheStore:
    """Process-wide store of persistent, keyed cache mounts.

    Acquiring a key blocks other acquisitions of the same key until it is
    released; different keys never block each other. Keys are normalized
    with ``safe_name`` before any lookup, so keys sharing a directory share
    one lock and one mount record.

    Locks belong to the running event loop. When the store is first used
    from a new loop (e.g. a second ``asyncio.run``) the lock table is
    replaced; mounts and counters are kept.
    """

    def __init__(self, root: Optional[Path] = None):
        self._root = Path(root) if root else None
        self._initialized = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._mounts: Dict[str, CacheMount] = {}
        self.acquisitions: Counter = Counter()
        self.contentions: Counter = Counter()

    @property
    def root(self) -> Path:
        if self._root is None:
            self._root = default_cache_dir()
        return self._root

    def _ensure_root(self) -> None:
        if not self._initialized:
            self.root.mkdir(parents=True, exist_ok=True)
            self._initialized = True
            logger.info("cache_store_initialized", root=str(self.root))

    def mount_path(self, key: str) -> Path:
        return self.root / safe_name(key)

    def _lock_for(self, key: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            if self._loop is not None:
                logger.debug("cache_locks_reset", locks=len(self._locks))
            self._loop = loop
            self._locks = {}
        return self._locks.setdefault(key, asyncio.Lock())

    def _mount_for(self, key: str, scope: CacheScope) -> CacheMount:
        mount = self._mounts.get(key)
        if mount is None:
            mount = CacheMount(key=key, mount_path=self.mount_path(key), scope=scope)
            mount.mount_path.mkdir(parents=True, exist_ok=True)
            self._mounts[key] = mount
        elif mount.scope != scope:
            raise InvalidSpec(
                f"Cache key {key} requested as {scope.value} but mounted as {mount.scope.value}"
            )
        return mount

    async def acquire(
        self, key: str, scope: CacheScope = CacheScope.PER_TOOL, owner: str = ""
    ) -> CacheHandle:
        key = safe_name(key)
        self._ensure_root()
        lock = self._lock_for(key)

        if lock.locked():
            self.contentions[key] += 1
            logger.debug("cache_waiting", key=key, owner=owner)

        await lock.acquire()
        try:
            mount = self._mount_for(key, scope)
        except BaseException:
            lock.release()
            raise

        self.acquisitions[key] += 1
        logger.debug("cache_acquired", key=key, owner=owner, path=str(mount.mount_path))
        return CacheHandle(mount=mount, owner=owner, lock=lock)

    def release(self, handle: CacheHandle) -> None:
        if handle.released:
            raise ValueError(f"Cache handle for {handle.key} already released")
        handle.released = True
        handle.lock.release()
        logger.debug("cache_released", key=handle.key, owner=handle.owner)

    @asynccontextmanager
    async def hold(
        self, bindings: Sequence[CacheBinding], owner: str = ""
    ) -> AsyncIterator[Dict[str, CacheMount]]:
        """Hold every cache a step needs for the duration of the block.

        Keys are acquired in sorted order so that builds sharing several
        keys cannot deadlock each other. A key listed twice is held once;
        listed with two different scopes it is an ``InvalidSpec``.
        """
        scopes: Dict[str, CacheScope] = {}
        for binding in bindings:
            key = safe_name(binding.key)
            seen = scopes.setdefault(key, binding.scope)
            if seen != binding.scope:
                raise InvalidSpec(
                    f"Cache key {key} is bound as both {seen.value} and {binding.scope.value}"
                )

        handles = []
        try:
            for key in sorted(scopes):
                handles.append(await self.acquire(key, scopes[key], owner))
            yield {h.key: h.mount for h in handles}
        finally:
            for handle in reversed(handles):
                self.release(handle)


_DEFAULT_STORE: Optional[CacheStore] = None


def default_store() -> CacheStore:
    global _DEFAULT_STORE
    if _DEFAULT_STORE is None:
        _DEFAULT_STORE = CacheStore(load_settings().cache_dir)
    return _DEFAULT_STORE
