#!/usr/bin/env python3
"""Persistence for the PERFEKTday parameter record.

Only the Settings half of ScheduleParameters is written; runtime state is
rebuilt on every start with PERFEKTday switched on.

The document is:
- Loaded from JSON at startup (created with defaults when missing)
- Reset to defaults when it cannot be parsed
- Written after every persisted setting change, in the background
- Replaced atomically (temporary file, then rename)
"""

import asyncio
import json
import logging
import os
from typing import Callable, Optional, Set

import aiofiles
import aiofiles.os

from .errors import ParseError, PersistenceError
from .params import RuntimeState, ScheduleParameters, Settings

logger = logging.getLogger(__name__)


class ParameterStore:
    """Reads and writes the persisted settings document."""

    def __init__(self, path: str, defaults: Optional[Callable[[], Settings]] = None):
        """Initialize the store.

        Args:
            path: Location of the JSON document
            defaults: Factory for the Settings used when no valid document exists
        """
        self.path = path
        self._defaults = defaults or Settings
        self._write_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    def default_settings(self) -> Settings:
        try:
            return self._defaults()
        except Exception as e:
            logger.warning(f"Default settings factory failed, using built-in defaults: {e}")
            return Settings()

    async def load(self) -> ScheduleParameters:
        """Load parameters from disk.

        Never raises: a missing document is created from defaults and a
        corrupt one is deleted and replaced by defaults.
        """
        runtime = RuntimeState(perfekt_day=True)

        if not await aiofiles.os.path.exists(self.path):
            logger.info(f"No parameter file found at {self.path}, writing defaults")
            params = ScheduleParameters(settings=self.default_settings(), runtime=runtime)
            await self.save(params)
            return params

        try:
            settings = await self._read()
        except PersistenceError as e:
            logger.error(f"Discarding corrupt parameter file {self.path}: {e}")
            await self._discard()
            params = ScheduleParameters(settings=self.default_settings(), runtime=runtime)
            await self.save(params)
            return params

        logger.info(f"Loaded parameters from {self.path}")
        return ScheduleParameters(settings=settings, runtime=runtime)

    async def _read(self) -> Settings:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                text = await f.read()
            data = json.loads(text)
            return Settings.from_dict(data, defaults=Settings())
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ParseError, TypeError) as e:
            raise PersistenceError(str(e)) from e

    async def _discard(self) -> None:
        try:
            await aiofiles.os.remove(self.path)
        except OSError as e:
            logger.warning(f"Failed to remove {self.path}: {e}")

    async def save(self, params: ScheduleParameters) -> bool:
        """Write the settings record to disk.

        Returns:
            True if the document was replaced, False if the write failed
        """
        data = params.settings.to_dict()
        return await self._write(data)

    async def _write(self, data: dict) -> bool:
        tmp_path = f"{self.path}.tmp"
        async with self._write_lock:
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(data, indent=2))
                    await f.flush()
                await aiofiles.os.replace(tmp_path, self.path)
                logger.debug(f"Saved parameters to {self.path}")
                return True
            except OSError as e:
                logger.error(f"Failed to save parameters to {self.path}: {e}")
                return False

    def schedule_save(self, params: ScheduleParameters) -> asyncio.Task:
        """Save in the background; the caller does not wait for the write.

        The settings are captured now, so a later mutation cannot leak into
        this write. Writes land in the order they were scheduled.
        """
        data = params.settings.to_dict()
        task = asyncio.get_running_loop().create_task(self._write(data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
