"""Append-only JSONL event log, one file per conversation.

Each append writes exactly one complete line under a per-conversation
asyncio.Lock, so concurrent turns on the same conversation never interleave
and turns on different conversations never wait on each other. File I/O
runs in worker threads to keep the event loop free.

Reads are replay-tolerant: blank lines, a truncated tail left by a crash
(even one cut inside a multi-byte character), and records with
discriminants this version does not know are skipped with a warning
instead of failing the whole read. The next append after a torn tail
starts on a fresh line.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from palaver.storage.schemas import Event

logger = logging.getLogger(__name__)

_MAX_KEY_LEN = 150
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def conversation_key(conversation_id: str) -> str:
    """Map a conversation id to a filesystem-safe storage key.

    Every character outside ``[A-Za-z0-9_-]`` is percent-escaped (``.`` and
    ``%`` included), so the mapping is injective and no id can name a parent
    directory or a path separator. Long keys are truncated and suffixed with
    a digest of the full id.
    """
    if not isinstance(conversation_id, str) or not conversation_id:
        raise ValueError("conversation id must be a non-empty string")

    key = _UNSAFE_CHARS.sub(
        lambda m: "".join(f"%{b:02X}" for b in m.group().encode("utf-8")),
        conversation_id,
    )
    if len(key) > _MAX_KEY_LEN:
        digest = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()[:16]
        key = f"{key[:_MAX_KEY_LEN]}-{digest}"
    return key


class EventLog:
    """Durable per-conversation event storage."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_ts: dict[str, datetime] = {}

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, conversation_id: str) -> Path:
        return self._root / f"{conversation_key(conversation_id)}.jsonl"

    async def append(self, conversation_id: str, event: Event) -> Event:
        """Durably append one event and return it as stored.

        The stored timestamp is clamped up to the previous event's so the
        sequence stays non-decreasing even if the wall clock steps back.
        """
        key = conversation_key(conversation_id)
        path = self._root / f"{key}.jsonl"
        lock = self._locks.setdefault(key, asyncio.Lock())

        async with lock:
            last = self._last_ts.get(key)
            if last is None:
                existing = await asyncio.to_thread(self._read_file, path)
                if existing:
                    last = existing[-1].timestamp
            if last is not None and event.timestamp < last:
                event = event.model_copy(update={"timestamp": last})

            await asyncio.to_thread(self._write_line, path, event.to_json())
            self._last_ts[key] = event.timestamp

        return event

    async def read_all(self, conversation_id: str) -> list[Event]:
        """Return every event of a conversation in append order.

        A conversation that was never written is an empty list.
        """
        path = self.path_for(conversation_id)
        return await asyncio.to_thread(self._read_file, path)

    # ------------------------------------------------------------------
    # Sync helpers (run in worker threads)
    # ------------------------------------------------------------------

    def _write_line(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "ab") as fh:
            # A torn tail from a crash keeps its own line
            if os.fstat(fh.fileno()).st_size > 0 and not self._ends_with_newline(path):
                fh.write(b"\n")
            fh.write(line.encode("utf-8") + b"\n")
            fh.flush()
            os.fsync(fh.fileno())

    @staticmethod
    def _ends_with_newline(path: Path) -> bool:
        with open(path, "rb") as fh:
            fh.seek(-1, os.SEEK_END)
            return fh.read(1) == b"\n"

    def _read_file(self, path: Path) -> list[Event]:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return []

        events: list[Event] = []
        for lineno, raw in enumerate(data.split(b"\n"), 1):
            if not raw.strip():
                continue
            try:
                line = raw.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Skipping undecodable line %d in %s", lineno, path.name)
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed line %d in %s", lineno, path.name)
                continue
            if not isinstance(record, dict):
                logger.warning("Skipping non-object record at line %d in %s", lineno, path.name)
                continue
            try:
                events.append(Event.model_validate(record))
            except ValidationError as e:
                logger.warning(
                    "Skipping unreadable event at line %d in %s: %s",
                    lineno,
                    path.name,
                    e.errors()[0].get("msg", "invalid") if e.errors() else "invalid",
                )
        return events
