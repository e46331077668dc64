"""User registry lookup, for existence checks only.

Defines the UserRegistry Protocol the coordinators depend on, plus a
read-only implementation over the ``id;username;password`` file the
credential service maintains. Credentials are never read here.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

from hallmark.errors import StoreError

logger = logging.getLogger(__name__)


@runtime_checkable
class UserRegistry(Protocol):
    """Async lookup of valid user identifiers."""

    async def user_ids(self) -> set[str]: ...

    async def user_exists(self, user_id: str) -> bool: ...


class CsvUserRegistry:
    """UserRegistry backed by a delimited users file. A missing file means no users."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        delimiter: str = ";",
        encoding: str = "utf-8",
    ) -> None:
        self._path = Path(path)
        self._delimiter = delimiter
        self._encoding = encoding

    def _read_ids(self) -> set[str]:
        if not self._path.exists():
            logger.warning("Users file %s not found; no users are valid.", self._path)
            return set()
        with self._path.open("r", encoding=self._encoding, newline="") as fh:
            reader = csv.DictReader(fh, delimiter=self._delimiter)
            return {
                str(row["id"]).strip()
                for row in reader
                if row.get("id") and str(row["id"]).strip()
            }

    async def user_ids(self) -> set[str]:
        try:
            return await asyncio.to_thread(self._read_ids)
        except (OSError, csv.Error, UnicodeError) as e:
            raise StoreError(f"Failed to read users file {self._path}: {e}") from e

    async def user_exists(self, user_id: str) -> bool:
        return user_id in await self.user_ids()


class StaticUserRegistry:
    """In-memory UserRegistry, for hosts that already hold the user list."""

    def __init__(self, user_ids: set[str] | None = None) -> None:
        self._ids = set(user_ids or ())

    async def user_ids(self) -> set[str]:
        return set(self._ids)

    async def user_exists(self, user_id: str) -> bool:
        return user_id in self._ids
