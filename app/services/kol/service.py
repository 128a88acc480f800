"""
KOL Membership Index

In-memory lookup of the reserved KOL list. Membership is an exact,
case-insensitive match on the identity id first and the handle second.

The list is a JSON file:
    {"kols": [{"identity": "44196397", "handle": "elonmusk"}, ...]}
("xId"/"username" are accepted as aliases for older exports.)

A missing or malformed file yields an empty index: nobody is a KOL, sign-in
keeps working.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple, Union

import config
from app.core.structured_logger import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KolEntry:
    identity: str
    handle: str


def _read_entries(path: Path) -> List[KolEntry]:
    """Parse the list file. Raises OSError / ValueError on unreadable or malformed input."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not isinstance(data.get("kols"), list):
        raise ValueError('invalid KOL list structure, expected {"kols": [...]}')

    entries = []
    for index, raw in enumerate(data["kols"]):
        if not isinstance(raw, dict):
            logger.warning(f"KOL_ENTRY_SKIPPED index={index} reason=not_an_object")
            continue
        identity = raw.get("identity", raw.get("xId"))
        handle = raw.get("handle", raw.get("username"))
        if not isinstance(identity, str) or not isinstance(handle, str) or not identity or not handle:
            logger.warning(f"KOL_ENTRY_SKIPPED index={index} reason=missing_identity_or_handle")
            continue
        entries.append(KolEntry(identity=identity.strip(), handle=handle.strip().lstrip("@")))
    return entries


class KolIndex:
    """
    Loaded once at startup, reloadable on demand.

    Lookups before the first load trigger a load.
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path or config.KOL_LIST_PATH)
        self._entries: Optional[Tuple[KolEntry, ...]] = None
        self._identities: FrozenSet[str] = frozenset()
        self._handles: FrozenSet[str] = frozenset()
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._entries is not None

    @property
    def count(self) -> int:
        return len(self._entries or ())

    def entries(self) -> Tuple[KolEntry, ...]:
        return self._entries or ()

    async def load(self) -> int:
        """
        (Re)read the list file and swap the index in one step.

        Returns:
            Number of KOL entries now indexed.
        """
        async with self._lock:
            try:
                entries = await asyncio.to_thread(_read_entries, self.path)
                outcome, reason = "success", None
            except FileNotFoundError:
                entries = []
                outcome, reason = "empty", f"list not found at {self.path}"
            except (OSError, ValueError) as e:
                entries = []
                outcome, reason = "failed", f"{type(e).__name__}: {str(e)[:100]}"

            self._identities = frozenset(e.identity.lower() for e in entries)
            self._handles = frozenset(e.handle.lower() for e in entries)
            self._entries = tuple(entries)

        log_event(
            logger,
            component="kol",
            operation="load_list",
            outcome=outcome,
            reason=reason,
            level="info" if outcome == "success" else "warning",
            count=len(entries),
        )
        return len(entries)

    async def reload(self) -> int:
        return await self.load()

    async def is_kol(self, identity: Optional[str], handle: Optional[str] = None) -> bool:
        if not self.is_loaded:
            await self.load()
        if identity and identity.strip().lower() in self._identities:
            return True
        if handle and handle.strip().lstrip("@").lower() in self._handles:
            return True
        return False
