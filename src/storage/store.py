"""Durable JSON dataset store and append-only audit log.

Contract:
- One JSON document per named dataset (<data_dir>/<dataset>.json)
- load() never raises: missing or corrupt files read back as the empty default
- save() overwrites the whole document (temp file + os.replace) and is visible
  to the next load() in this process and after a restart
- Sets are written as sorted JSON lists and read back as sets
- Single-process only: no cross-process coordination
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def as_ms(value: Any) -> int | None:
    """Stored timestamp as int milliseconds, or None when it is not a number."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class JsonStore:
    """Whole-document JSON persistence for named datasets."""

    def __init__(self, data_dir: str | Path):
        self._dir = Path(data_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self._dir

    def path_for(self, dataset: str) -> Path:
        return self._dir / f"{dataset}.json"

    def load(self, dataset: str, default: T) -> T:
        """Load a dataset, falling back to a copy of ``default``.

        The stored document must have the same container type as ``default``
        (a list is accepted for a set default); anything else is treated as
        corrupt.
        """
        path = self.path_for(dataset)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return copy.deepcopy(default)
        except (OSError, ValueError):
            logger.warning("Dataset %s unreadable, treating as empty", dataset, exc_info=True)
            return copy.deepcopy(default)

        if isinstance(default, set):
            if isinstance(raw, list):
                return set(raw)  # type: ignore[return-value]
        elif isinstance(raw, type(default)):
            return raw

        logger.warning(
            "Dataset %s has unexpected shape %s, treating as empty",
            dataset,
            type(raw).__name__,
        )
        return copy.deepcopy(default)

    def save(self, dataset: str, value: Any) -> None:
        """Overwrite a dataset with ``value``."""
        if isinstance(value, set):
            value = sorted(value)
        path = self.path_for(dataset)
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=f".{dataset}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh, indent=2, default=str)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


class AuditLog:
    """Append-only JSON-lines log of routed events.

    Fire-and-forget: write failures are logged and never reach the caller.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: dict[str, Any]) -> None:
        line = json.dumps(
            {"ts": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()), **entry},
            default=str,
        )
        try:
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            logger.warning("Failed to append audit entry to %s", self._path, exc_info=True)

    def read(self) -> list[dict[str, Any]]:
        """Parsed entries, skipping malformed lines."""
        entries: list[dict[str, Any]] = []
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return entries
        for line in lines:
            try:
                entries.append(json.loads(line))
            except ValueError:
                continue
        return entries
