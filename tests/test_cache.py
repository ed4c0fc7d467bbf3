"""Tests for the process-local catalog cache."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone

import pytest

from appregkit import cache as c
from appregkit.models import CatalogIndex, LegacyCatalogDocument


class StubStorage:
    """In-memory stand-in for CatalogStorage that counts every read."""

    def __init__(self, index=None, legacy=None) -> None:
        self.index = index
        self.legacy = legacy
        self.reads: Counter = Counter()

    def read_index(self):
        self.reads["Index"] += 1
        return self.index

    def read_legacy(self):
        self.reads["Legacy"] += 1
        return self.legacy

    def read_component(self, index, component):
        self.reads[component] += 1
        return {"component": component}


class TestLazyLoading:
    def test_second_get_does_not_touch_disk(self) -> None:
        stub = StubStorage(index=CatalogIndex())
        cache = c.CatalogCache(stub)

        first = cache.get(c.SERVICE_PRINCIPALS)
        second = cache.get(c.SERVICE_PRINCIPALS)

        assert first is second
        assert stub.reads["ServicePrincipals"] == 1
        assert stub.reads["Index"] == 1
        assert cache.loads == 2

    def test_components_load_independently(self) -> None:
        stub = StubStorage(index=CatalogIndex())
        cache = c.CatalogCache(stub)

        cache.get(c.SERVICE_PRINCIPALS)
        assert not cache.is_loaded(c.PERMISSION_DEFINITIONS)
        cache.get(c.COMMON_PERMISSIONS)

        assert stub.reads["LegacyCommonPermissions"] == 1
        assert stub.reads["PermissionDefinitions"] == 0
        assert stub.reads["Index"] == 1

    def test_missing_index_short_circuits_satellites(self) -> None:
        stub = StubStorage(index=None)
        cache = c.CatalogCache(stub)

        assert cache.get(c.PERMISSION_DEFINITIONS) is None
        assert cache.get(c.SERVICE_PERMISSION_MAPPINGS) is None
        assert stub.reads["Index"] == 1
        assert stub.reads["PermissionDefinitions"] == 0
        assert stub.reads["ServicePermissionMappings"] == 0

    def test_legacy_slot_is_memoized_including_misses(self) -> None:
        stub = StubStorage(legacy=None)
        cache = c.CatalogCache(stub)

        assert cache.get(c.LEGACY_FORMAT) is None
        assert cache.get(c.LEGACY_FORMAT) is None
        assert stub.reads["Legacy"] == 1

    def test_force_reload(self) -> None:
        stub = StubStorage(legacy=LegacyCatalogDocument())
        cache = c.CatalogCache(stub)

        cache.get(c.LEGACY_FORMAT)
        cache.get(c.LEGACY_FORMAT, force_reload=True)
        assert stub.reads["Legacy"] == 2

    def test_unknown_component(self) -> None:
        with pytest.raises(ValueError):
            c.CatalogCache(StubStorage()).get("Everything")


class TestInvalidation:
    def test_invalidate_resets_all_slots(self) -> None:
        stub = StubStorage(index=CatalogIndex(), legacy=LegacyCatalogDocument())
        cache = c.CatalogCache(stub)
        cache.get(c.SERVICE_PRINCIPALS)
        cache.get(c.LEGACY_FORMAT)
        cache.record_refresh(datetime(2026, 10, 1, tzinfo=timezone.utc))

        cache.invalidate()

        assert cache.last_refresh is None
        assert not any(cache.is_loaded(comp) for comp in c.COMPONENTS)
        cache.get(c.SERVICE_PRINCIPALS)
        assert stub.reads["ServicePrincipals"] == 2
        assert stub.reads["Index"] == 2

    def test_independent_instances_do_not_share_state(self) -> None:
        stub = StubStorage(index=CatalogIndex())
        one, two = c.CatalogCache(stub), c.CatalogCache(stub)
        one.get(c.INDEX)
        assert not two.is_loaded(c.INDEX)
        two.get(c.INDEX)
        assert stub.reads["Index"] == 2


def test_cache_over_real_storage(storage) -> None:
    storage.initialize_structure()
    cache = c.CatalogCache(storage)
    assert cache.get(c.SERVICE_PRINCIPALS) == {}
    assert cache.get(c.INDEX).metadata.version == "3.0"
    assert cache.loads == 2
