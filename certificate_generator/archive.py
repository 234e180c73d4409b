"""Streamed ZIP archive of rendered certificates."""

from __future__ import annotations

import logging
import os
import re
import zipfile
from typing import BinaryIO, Collection, Optional, Set, Union

from .config import MAX_ENTRY_NAME_LENGTH
from .errors import ArchiveError, DuplicateEntryError
from .models import Row

LOGGER = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^a-z0-9_.-]")
ENTRY_EXTENSION = ".pdf"

Sink = Union[str, "os.PathLike[str]", BinaryIO]


def sanitize_entry_name(raw: str, max_length: int = MAX_ENTRY_NAME_LENGTH) -> str:
    name = _UNSAFE_CHARS_RE.sub("_", raw.strip().casefold())
    name = name.lstrip(".")
    return name[:max_length]


def entry_name_for_row(row: Row, index: int) -> str:
    """Archive entry for a row: its name-bearing field if present, else its position."""
    base = ""
    for key, value in row.items():
        if key.strip().casefold() == "name" and value and value.strip():
            base = sanitize_entry_name(value)
            break
    if not base:
        base = f"certificate_{index + 1}"
    return f"{base}{ENTRY_EXTENSION}"


def unique_entry_name(name: str, index: int, taken: Collection[str]) -> str:
    if name not in taken:
        return name
    stem, dot, extension = name.rpartition(".")
    if not dot:
        stem, extension = name, ""
    suffix = f".{extension}" if extension else ""
    candidate = f"{stem}_{index + 1}{suffix}"
    counter = 2
    while candidate in taken:
        candidate = f"{stem}_{index + 1}_{counter}{suffix}"
        counter += 1
    return candidate


class ArchiveBuilder:
    """Writes entries straight through to the sink; only the central directory stays in memory."""

    def __init__(self, compresslevel: int = 6) -> None:
        self.compresslevel = compresslevel
        self.path: Optional[str] = None
        self.names: Set[str] = set()
        self.finalized = False
        self._zip: Optional[zipfile.ZipFile] = None

    @property
    def entry_count(self) -> int:
        return len(self.names)

    def open(self, sink: Sink) -> None:
        if self._zip is not None or self.finalized:
            raise ArchiveError("Archive is already open.")
        try:
            if isinstance(sink, (str, os.PathLike)):
                self.path = os.fspath(sink)
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
            self._zip = zipfile.ZipFile(
                sink,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compresslevel,
            )
        except OSError as exc:
            raise ArchiveError(f"Could not open archive: {exc}") from exc

    def append(self, entry_name: str, data: bytes) -> None:
        if self._zip is None:
            raise ArchiveError("Archive is not open.")
        if entry_name in self.names:
            raise DuplicateEntryError(entry_name)
        try:
            self._zip.writestr(entry_name, data)
        except (OSError, ValueError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Could not write {entry_name}: {exc}") from exc
        self.names.add(entry_name)

    def finalize(self) -> None:
        if self.finalized:
            raise ArchiveError("Archive was already finalized.")
        if self._zip is None:
            raise ArchiveError("Archive is not open.")
        archive, self._zip = self._zip, None
        try:
            archive.close()
            if self.path is not None:
                with open(self.path, "rb+") as handle:
                    os.fsync(handle.fileno())
        except OSError as exc:
            raise ArchiveError(f"Could not finalize archive: {exc}") from exc
        self.finalized = True
        LOGGER.debug("Finalized archive %s with %d entries", self.path or "<stream>", len(self.names))

    def abort(self) -> None:
        archive, self._zip = self._zip, None
        if archive is not None:
            try:
                archive.close()
            except (OSError, ValueError):
                LOGGER.debug("Ignoring error while closing aborted archive", exc_info=True)
        if self.path is not None and os.path.exists(self.path):
            try:
                os.remove(self.path)
            except OSError:
                LOGGER.warning("Could not remove aborted archive %s", self.path)
