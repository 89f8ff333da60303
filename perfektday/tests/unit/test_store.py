#!/usr/bin/env python3
"""Test suite for store.py - parameter persistence."""

import json
import os

import pytest

from perfektday.params import Settings
from perfektday.store import ParameterStore


class TestParameterStore:
    """Test cases for ParameterStore."""

    @pytest.fixture(autouse=True)
    def _paths(self, tmp_path):
        self.tmp_path = tmp_path
        self.path = str(tmp_path / "perfektday_parameters.json")

    def _read_document(self):
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_document(self, text):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(text)

    @pytest.mark.asyncio
    async def test_load_absent_document_writes_defaults(self):
        store = ParameterStore(self.path)

        params = await store.load()

        assert params.settings == Settings()
        assert params.runtime.perfekt_day is True
        assert self._read_document() == Settings().to_dict()

    @pytest.mark.asyncio
    async def test_load_absent_document_uses_defaults_factory(self):
        store = ParameterStore(self.path, defaults=lambda: Settings(sun_up="05:00", sun_down="21:30"))

        params = await store.load()

        assert params.settings.sun_up == "05:00"
        assert self._read_document()["sun_down"] == "21:30"

    @pytest.mark.asyncio
    async def test_failing_defaults_factory_falls_back(self):
        def broken():
            raise ValueError("no sun today")

        store = ParameterStore(self.path, defaults=broken)
        params = await store.load()

        assert params.settings == Settings()

    @pytest.mark.asyncio
    async def test_load_existing_document(self):
        self._write_document(json.dumps({"sun_up": "07:00", "solar_noon_dim": 200, "cct_high": 5000}))
        store = ParameterStore(self.path)

        params = await store.load()

        assert params.settings.sun_up == "07:00"
        assert params.settings.solar_noon_dim == 200
        assert params.settings.cct_high == 5000
        assert params.settings.sun_down == "18:00"

    @pytest.mark.asyncio
    async def test_runtime_is_never_restored(self):
        doc = Settings().to_dict()
        doc.update({"perfekt_day": False, "cct_now": 99})
        self._write_document(json.dumps(doc))

        params = await ParameterStore(self.path).load()

        assert params.runtime.perfekt_day is True
        assert params.runtime.cct_now == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [
        "{not json",
        "[1, 2, 3]",
        json.dumps({"sun_up_dim": "high"}),
        json.dumps({"sun_up": "99:99"}),
        "",
    ])
    async def test_corrupt_document_is_reset(self, text):
        self._write_document(text)
        store = ParameterStore(self.path)

        params = await store.load()

        assert params.settings == Settings()
        assert self._read_document() == Settings().to_dict()

    @pytest.mark.asyncio
    async def test_save_writes_only_settings(self):
        store = ParameterStore(self.path)
        params = await store.load()
        params.settings.night_cct = 42
        params.set_targets(cct=200, dim=10)
        params.set_perfekt_day(False)

        assert await store.save(params) is True

        doc = self._read_document()
        assert doc["night_cct"] == 42
        assert set(doc) == set(Settings().to_dict())
        assert not os.path.exists(self.path + ".tmp")

    @pytest.mark.asyncio
    async def test_save_creates_directory(self):
        path = str(self.tmp_path / "nested" / "dir" / "params.json")
        store = ParameterStore(path)

        params = await store.load()

        assert params.settings == Settings()
        assert os.path.exists(path)

    @pytest.mark.asyncio
    async def test_save_failure_returns_false(self):
        blocker = self.tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = ParameterStore(str(blocker / "params.json"))

        params = await store.load()

        assert params.settings == Settings()
        assert await store.save(params) is False

    @pytest.mark.asyncio
    async def test_schedule_save_and_flush(self):
        store = ParameterStore(self.path)
        params = await store.load()

        params.set_level("sun_down_dim", 12)
        store.schedule_save(params)
        params.set_anchor("sun_up", "05:30")
        store.schedule_save(params)
        await store.flush()

        doc = self._read_document()
        assert doc["sun_down_dim"] == 12
        assert doc["sun_up"] == "05:30"

    @pytest.mark.asyncio
    async def test_schedule_save_snapshots_settings(self):
        store = ParameterStore(self.path)
        params = await store.load()

        params.set_level("night_cct", 5)
        task = store.schedule_save(params)
        params.set_level("night_cct", 6)
        await task

        assert self._read_document()["night_cct"] == 5

    @pytest.mark.asyncio
    async def test_saved_document_loads_back(self):
        store = ParameterStore(self.path)
        params = await store.load()
        params.set_cct_limit("cct_low", 2200)
        params.set_anchor("solar_noon", "13:10")
        await store.save(params)

        reloaded = await ParameterStore(self.path).load()

        assert reloaded.settings == params.settings

    @pytest.mark.asyncio
    async def test_flush_without_pending_writes(self):
        await ParameterStore(self.path).flush()
