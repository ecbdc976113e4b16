import asyncio

import pytest

from sandbox_provisioner.caches.markers import marker_path, read_marker, write_marker
from sandbox_provisioner.caches.store import CacheStore
from sandbox_provisioner.errors import InvalidSpec
from sandbox_provisioner.types import CacheBinding, CacheScope


@pytest.mark.asyncio
async def test_acquire_creates_root_lazily(tmp_path):
    """Test the store root appears on first acquire"""
    store = CacheStore(tmp_path / "cache")
    assert not store.root.exists()

    handle = await store.acquire("jdk-21", owner="b1")
    assert handle.path == tmp_path / "cache" / "jdk-21"
    assert handle.path.is_dir()
    store.release(handle)

    again = await store.acquire("jdk-21")
    assert again.path == handle.path
    store.release(again)
    assert store.acquisitions["jdk-21"] == 2


@pytest.mark.asyncio
async def test_same_key_is_serialized(store):
    """Test a second holder waits until the first releases"""
    events = []

    async def hold(name: str):
        async with store.hold([CacheBinding("maven-repository", CacheScope.SHARED)], owner=name):
            events.append(f"{name}-in")
            await asyncio.sleep(0.01)
            events.append(f"{name}-out")

    await asyncio.gather(hold("a"), hold("b"))

    assert events == ["a-in", "a-out", "b-in", "b-out"]
    assert store.contentions["maven-repository"] == 1
    assert store.acquisitions["maven-repository"] == 2


@pytest.mark.asyncio
async def test_disjoint_keys_run_concurrently(store):
    """Test holders of different keys never wait on each other"""
    a_inside = asyncio.Event()
    b_inside = asyncio.Event()

    async def hold(key: str, mine: asyncio.Event, other: asyncio.Event):
        async with store.hold([CacheBinding(key)]):
            mine.set()
            await other.wait()

    await asyncio.wait_for(
        asyncio.gather(
            hold("jdk-21", a_inside, b_inside),
            hold("maven-3.9.6", b_inside, a_inside),
        ),
        timeout=5,
    )
    assert sum(store.contentions.values()) == 0


@pytest.mark.asyncio
async def test_hold_releases_on_error(store):
    bindings = [CacheBinding("gradle-8.5"), CacheBinding("gradle-home", CacheScope.SHARED)]

    with pytest.raises(RuntimeError):
        async with store.hold(bindings) as mounts:
            assert set(mounts) == {"gradle-8.5", "gradle-home"}
            raise RuntimeError("step failed")

    async with store.hold(bindings) as mounts:
        assert mounts["gradle-home"].scope == CacheScope.SHARED


@pytest.mark.asyncio
async def test_scope_conflict(store):
    handle = await store.acquire("npm-cache", CacheScope.SHARED)
    store.release(handle)

    with pytest.raises(InvalidSpec):
        await store.acquire("npm-cache", CacheScope.PER_TOOL)

    # The lock must not stay held after the failed acquire
    handle = await asyncio.wait_for(store.acquire("npm-cache", CacheScope.SHARED), timeout=1)
    store.release(handle)


@pytest.mark.asyncio
async def test_double_release(store):
    handle = await store.acquire("jdk-21")
    store.release(handle)
    with pytest.raises(ValueError):
        store.release(handle)


@pytest.mark.asyncio
async def test_markers(store):
    """Test marker round trip and corruption handling"""
    handle = await store.acquire("jdk-21")
    mount = handle.mount

    assert read_marker(mount, "abc") is None

    path = write_marker(mount, "abc", {"version": "21"})
    assert path == marker_path(mount, "abc")
    marker = read_marker(mount, "abc")
    assert marker["version"] == "21"
    assert marker["fingerprint"] == "abc"
    assert "installed_at" in marker
    assert not path.with_suffix(".tmp").exists()

    path.write_text("{not json")
    assert read_marker(mount, "abc") == {}

    path.unlink()
    assert read_marker(mount, "abc") is None
    store.release(handle)


@pytest.mark.asyncio
async def test_keys_are_normalized(store):
    """Test keys that map to one directory share one lock and one mount"""
    handle = await store.acquire("Maven-3.9.6")
    assert handle.key == "maven-3.9.6"
    assert handle.path == store.mount_path("maven-3.9.6")

    waiter = asyncio.ensure_future(store.acquire("maven-3.9.6"))
    await asyncio.sleep(0)
    assert not waiter.done()
    assert store.contentions["maven-3.9.6"] == 1

    store.release(handle)
    store.release(await waiter)
    assert store.acquisitions["maven-3.9.6"] == 2


@pytest.mark.asyncio
async def test_hold_holds_a_repeated_key_once(store):
    bindings = [CacheBinding("npm-cache", CacheScope.SHARED), CacheBinding("NPM cache", CacheScope.SHARED)]

    async def hold():
        async with store.hold(bindings) as mounts:
            return list(mounts)

    assert await asyncio.wait_for(hold(), timeout=1) == ["npm-cache"]
    assert store.acquisitions["npm-cache"] == 1


@pytest.mark.asyncio
async def test_hold_rejects_conflicting_scopes(store):
    bindings = [CacheBinding("maven-3.9.6"), CacheBinding("Maven-3.9.6", CacheScope.SHARED)]

    with pytest.raises(InvalidSpec):
        async with store.hold(bindings):
            pass

    assert sum(store.acquisitions.values()) == 0


def test_store_survives_event_loop_changes(store):
    """Test a store used by consecutive asyncio.run calls keeps working"""

    async def contend():
        async def hold():
            async with store.hold([CacheBinding("jdk-21")]):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(asyncio.gather(hold(), hold()), timeout=5)

    asyncio.run(contend())
    asyncio.run(contend())

    assert store.contentions["jdk-21"] == 2
    assert store.acquisitions["jdk-21"] == 4
