#!/usr/bin/env python3
"""Test suite for protocol.py - frame decoding and command dispatch."""

import asyncio
import copy
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from perfektday.errors import ClockSyncError, ParseError
from perfektday.guard import UpdateGuard
from perfektday.params import ScheduleParameters
from perfektday.protocol import (
    ERROR_RESPONSE,
    ArgType,
    CommandParser,
    parse_argument,
    sanitize,
    split_frame,
)
from perfektday.store import ParameterStore

NOW = datetime(2024, 7, 4, 10, 15, 30)


def make_clock(now=NOW):
    clock = MagicMock()
    clock.now = MagicMock(return_value=now)
    clock.set = AsyncMock()
    return clock


class TestFrameHelpers:
    """Test sanitizing and splitting frames."""

    def test_sanitize_keeps_protocol_characters(self):
        assert sanitize("RTS 07:30\n") == "RTS 07:30"
        assert sanitize("RDS 12/25\r\n") == "RDS 12/25"

    def test_sanitize_drops_everything_else(self):
        assert sanitize("\x00P\tD?!\r\n") == "PD?"

    def test_split_frame(self):
        assert split_frame("CTS 200") == ("CTS", "200")
        assert split_frame("PD?") == ("PD?", None)
        assert split_frame("CTS ") == ("CTS", None)

    def test_parse_argument_shapes(self):
        assert parse_argument(ArgType.FLAG, "1") is True
        assert parse_argument(ArgType.FLAG, "0") is False
        assert parse_argument(ArgType.NUMBER, "200") == 200
        assert parse_argument(ArgType.TIME, "7:05") == (7, 5)
        assert parse_argument(ArgType.DATE, "12/25") == (12, 25)
        assert parse_argument(ArgType.YEAR, "24") == 24
        assert parse_argument(ArgType.NONE, None) is None

    @pytest.mark.parametrize("arg_type,argument", [
        (ArgType.FLAG, "2"),
        (ArgType.FLAG, None),
        (ArgType.NUMBER, "abc"),
        (ArgType.NUMBER, "123456"),
        (ArgType.TIME, "0730"),
        (ArgType.DATE, "12-25"),
        (ArgType.YEAR, "20245"),
    ])
    def test_parse_argument_rejects_malformed(self, arg_type, argument):
        with pytest.raises(ParseError):
            parse_argument(arg_type, argument)


class TestCommandParser:
    """Test cases for CommandParser dispatch."""

    def setup_method(self):
        self.params = ScheduleParameters()
        self.store = MagicMock()
        self.guard = MagicMock()
        self.guard.request_push = AsyncMock(return_value=True)
        self.guard.refresh = AsyncMock(return_value=True)
        self.clock = make_clock()
        self.on_override = MagicMock()
        self.parser = CommandParser(
            self.params,
            self.store,
            self.guard,
            self.clock,
            on_override=self.on_override,
            clock_timeout=0.1,
        )

    def _snapshot(self):
        return copy.deepcopy((self.params.settings, self.params.runtime))

    # -- queries ------------------------------------------------------------
    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame,expected", [
        ("CK?\n", "CK;Version 0.83"),
        ("PD?\n", "PD;1"),
        ("PL?\n", "PL;1"),
        ("SU?\n", "SU;06:00"),
        ("SN?\n", "SN;12:00"),
        ("SD?\n", "SD;18:00"),
        ("DU?\n", "DU;255"),
        ("DN?\n", "DN;255"),
        ("DD?\n", "DD;255"),
        ("LT?\n", "LT;6500"),
        ("LB?\n", "LB;2700"),
        ("NC?\n", "NC;0"),
        ("CT?\n", "CT;0"),
        ("DL?\n", "DL;255"),
        ("RD?\n", "RD;07/04"),
        ("RY?\n", "RY;24"),
        ("RT?\n", "RT;10:15"),
    ])
    async def test_queries(self, frame, expected):
        assert await self.parser.handle(frame) == expected

    @pytest.mark.asyncio
    async def test_queries_do_not_mutate(self):
        before = self._snapshot()
        for code in self.parser.commands:
            if code.endswith("?"):
                await self.parser.handle(f"{code}\n")
        assert self._snapshot() == before
        self.store.schedule_save.assert_not_called()

    @pytest.mark.asyncio
    async def test_bytes_frame(self):
        assert await self.parser.handle(b"PD?\n") == "PD;1"

    @pytest.mark.asyncio
    async def test_frame_is_sanitized(self):
        assert await self.parser.handle("\x00PD?\r\n") == "PD;1"

    # -- errors ------------------------------------------------------------
    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [
        "XYZ\n",
        "PD?",
        "\n",
        "CTS\n",
        "CTS abc\n",
        "CTS 300\n",
        "DNS 256\n",
        "SUS 25:00\n",
        "SUS 7\n",
        "PDS 2\n",
        "LBS 7000\n",
        "LTS 20000\n",
        "RTS 0730\n",
        "RYS ab\n",
    ])
    async def test_rejected_frames_reply_err_and_change_nothing(self, frame):
        before = self._snapshot()

        assert await self.parser.handle(frame) == ERROR_RESPONSE

        await self.parser.wait_idle()
        assert self._snapshot() == before
        self.guard.request_push.assert_not_called()
        self.store.schedule_save.assert_not_called()
        self.clock.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_replies_err(self):
        self.clock.now.side_effect = RuntimeError("clock gone")
        assert await self.parser.handle("RT?\n") == ERROR_RESPONSE

    # -- settings ------------------------------------------------------------
    @pytest.mark.asyncio
    async def test_set_anchor_persists(self):
        assert await self.parser.handle("SUS 6:30\n") == "SU;06:30"

        assert self.params.settings.sun_up == "06:30"
        self.store.schedule_save.assert_called_once_with(self.params)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame,expected,field", [
        ("DUS 10\n", "DU;10", "sun_up_dim"),
        ("DNS 128\n", "DN;128", "solar_noon_dim"),
        ("DDS 0\n", "DD;0", "sun_down_dim"),
        ("NCS 40\n", "NC;40", "night_cct"),
    ])
    async def test_set_levels(self, frame, expected, field):
        assert await self.parser.handle(frame) == expected
        assert getattr(self.params.settings, field) == int(expected.split(";")[1])
        self.store.schedule_save.assert_called_once()

    @pytest.mark.asyncio
    async def test_set_cct_limits(self):
        assert await self.parser.handle("LTS 6000\n") == "LT;6000"
        assert await self.parser.handle("LBS 2200\n") == "LB;2200"
        assert self.params.settings.cct_high == 6000
        assert self.params.settings.cct_low == 2200

    @pytest.mark.asyncio
    async def test_set_cct_takes_manual_control(self):
        assert await self.parser.handle("CTS 200\n") == "CT;200"
        await self.parser.wait_idle()

        assert self.params.runtime.perfekt_day is False
        assert self.params.runtime.cct_now == 200
        self.guard.request_push.assert_awaited_once_with(cct=200)
        self.on_override.assert_called_once()
        self.store.schedule_save.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_dim_takes_manual_control(self):
        assert await self.parser.handle("DLS 64\n") == "DL;64"
        await self.parser.wait_idle()

        assert self.params.runtime.perfekt_day is False
        assert self.params.runtime.dim_now == 64
        self.guard.request_push.assert_awaited_once_with(dim=64)

    @pytest.mark.asyncio
    async def test_set_cct_pushes_mired_through_guard(self):
        gateway = MagicMock()
        gateway.set_attribute = AsyncMock()
        parser = CommandParser(self.params, self.store, UpdateGuard(self.params, gateway), self.clock)

        assert await parser.handle("CTS 200\n") == "CT;200"
        await parser.wait_idle()

        gateway.set_attribute.assert_awaited_once_with("ct", 176)
        assert await parser.handle("PD?\n") == "PD;0"
        assert await parser.handle("CT?\n") == "CT;200"

    @pytest.mark.asyncio
    async def test_perfekt_day_off_and_on(self):
        assert await self.parser.handle("PDS 0\n") == "PD;0"
        self.on_override.assert_called_once()
        self.guard.refresh.assert_not_called()

        assert await self.parser.handle("PDS 1\n") == "PD;1"
        await self.parser.wait_idle()
        self.guard.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_perfekt_light_flag(self):
        assert await self.parser.handle("PLS 0\n") == "PL;0"
        assert await self.parser.handle("PL?\n") == "PL;0"

    @pytest.mark.asyncio
    async def test_setting_is_idempotent(self, tmp_path):
        path = str(tmp_path / "params.json")
        store = ParameterStore(path)
        params = await store.load()
        parser = CommandParser(params, store, self.guard, self.clock)

        first = await parser.handle("DUS 42\n")
        await store.flush()
        with open(path, "r", encoding="utf-8") as f:
            after_first = f.read()

        second = await parser.handle("DUS 42\n")
        await store.flush()
        with open(path, "r", encoding="utf-8") as f:
            after_second = f.read()

        assert first == second == "DU;42"
        assert after_first == after_second

    # -- clock ------------------------------------------------------------
    @pytest.mark.asyncio
    async def test_sync_year(self):
        assert await self.parser.handle("RYS 24\n") == "RD;07/04"
        self.clock.set.assert_awaited_once_with(datetime(2024, 7, 4, 10, 15, 30))

    @pytest.mark.asyncio
    async def test_sync_year_out_of_range_keeps_clock(self):
        assert await self.parser.handle("RYS 100\n") == "RD;07/04"
        self.clock.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_date(self):
        after = datetime(2024, 12, 25, 10, 15, 31)
        self.clock.now.side_effect = [NOW, after]

        assert await self.parser.handle("RDS 12/25\n") == "RD;12/25"
        self.clock.set.assert_awaited_once_with(datetime(2024, 12, 25, 10, 15, 30))

    @pytest.mark.asyncio
    async def test_sync_invalid_date_keeps_clock(self):
        assert await self.parser.handle("RDS 2/30\n") == "RD;07/04"
        self.clock.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_time_refreshes_schedule(self):
        after = datetime(2024, 7, 4, 7, 45, 0)
        self.clock.now.side_effect = [NOW, after]

        assert await self.parser.handle("RTS 07:45\n") == "RT;07:45"
        await self.parser.wait_idle()

        self.clock.set.assert_awaited_once_with(datetime(2024, 7, 4, 7, 45, 30))
        self.guard.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_time_without_perfekt_day_does_not_push(self):
        self.params.set_perfekt_day(False)

        await self.parser.handle("RTS 07:45\n")
        await self.parser.wait_idle()

        self.guard.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_time_out_of_range_keeps_clock(self):
        assert await self.parser.handle("RTS 25:00\n") == "RT;10:15"
        self.clock.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_clock_setter_failure_reads_back(self):
        self.clock.set.side_effect = ClockSyncError("date: cannot set date: Operation not permitted")

        assert await self.parser.handle("RTS 07:45\n") == "RT;10:15"

    @pytest.mark.asyncio
    async def test_clock_setter_timeout_reads_back(self):
        async def hang(moment):
            await asyncio.sleep(10)

        self.clock.set.side_effect = hang

        assert await self.parser.handle("RDS 12/25\n") == "RD;07/04"
