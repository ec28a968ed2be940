"""Advisory statistics extracted from a collection payload.

Stats never take part in correctness decisions: any failure here degrades to
``None`` and the backup proceeds.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class DeckStats:
    """Card count of a single deck."""

    deck_id: int
    deck_name: str
    card_count: int


@dataclass
class SnapshotStats:
    """Rough counts of a collection at capture time."""

    total_cards: int
    total_notes: int
    total_decks: int
    total_revlog: int
    deck_stats: list[DeckStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotStats:
        return cls(
            total_cards=int(data.get("total_cards", 0)),
            total_notes=int(data.get("total_notes", 0)),
            total_decks=int(data.get("total_decks", 0)),
            total_revlog=int(data.get("total_revlog", 0)),
            deck_stats=[DeckStats(**d) for d in data.get("deck_stats", [])],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None) -> SnapshotStats | None:
        if not raw:
            return None
        return cls.from_dict(json.loads(raw))


def parse_deck_names(raw: str) -> dict[int, str]:
    """Parse the ``col.decks`` JSON object into ``{deck_id: name}``.

    Entries with a non-numeric id or without a name are ignored.
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("decks json must be an object")
    names: dict[int, str] = {}
    for deck_id, deck in data.items():
        try:
            parsed_id = int(deck_id)
        except ValueError:
            continue
        name = deck.get("name") if isinstance(deck, dict) else None
        if isinstance(name, str):
            names[parsed_id] = name
    return names


def extract_stats(collection_path: Path) -> SnapshotStats:
    """Read card/note/deck/revlog counts from a collection file.

    The file is opened read-only; a staged payload is never modified.
    Raises ``sqlite3.Error`` or ``ValueError`` if the file is not a collection.
    """
    uri = f"{collection_path.resolve().as_uri()}?mode=ro"
    with closing(sqlite3.connect(uri, uri=True)) as conn:
        total_cards = conn.execute("SELECT COUNT(*) FROM cards").fetchone()[0]
        total_notes = conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]
        total_revlog = conn.execute("SELECT COUNT(*) FROM revlog").fetchone()[0]
        row = conn.execute("SELECT decks FROM col LIMIT 1").fetchone()
        deck_names = parse_deck_names(row[0]) if row is not None else {}
        per_deck = conn.execute("SELECT did, COUNT(*) FROM cards GROUP BY did").fetchall()

    deck_stats = [
        DeckStats(
            deck_id=did,
            deck_name=deck_names.get(did, f"Deck {did}"),
            card_count=count,
        )
        for did, count in per_deck
    ]
    deck_stats.sort(key=lambda d: d.deck_name)
    return SnapshotStats(
        total_cards=total_cards,
        total_notes=total_notes,
        total_decks=len(deck_names),
        total_revlog=total_revlog,
        deck_stats=deck_stats,
    )


async def try_extract_stats(collection_path: Path) -> SnapshotStats | None:
    """Extract stats in a worker thread, returning None on any extraction failure."""
    try:
        return await asyncio.to_thread(extract_stats, collection_path)
    except (sqlite3.Error, ValueError, KeyError, TypeError, OSError) as exc:
        logger.warning("Stats extraction failed for %s: %s", collection_path, exc)
        return None
