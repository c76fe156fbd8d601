"""SQLite persistence layer for trade listings."""
from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional

import aiosqlite
from rapidfuzz import fuzz

from .errors import (
    Forbidden,
    NotFound,
    PreconditionFailed,
    StorageUnavailable,
    ValidationError,
)

SEARCH_LIMIT = 20
SUGGEST_SCORE_CUTOFF = 60

_COLUMNS = (
    "id, owner_id, have, want, price, platform, notes, status, "
    "created_at, expires_at, external_ref"
)
_LIVE = "status = 'active' AND (expires_at IS NULL OR expires_at > ?)"


def now_ms() -> int:
    return int(time.time() * 1000)


class ListingStatus(str, Enum):
    ACTIVE = "active"
    TRADED = "traded"
    CLOSED = "closed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ListingStatus.ACTIVE


#: Transitions a user (owner or moderator) may request.
USER_TRANSITIONS = frozenset({ListingStatus.TRADED, ListingStatus.CLOSED})


@dataclass(frozen=True)
class Listing:
    """A persisted HAVE → WANT trade offer."""

    id: int
    owner_id: str
    have: str
    want: str
    price: Optional[str]
    platform: Optional[str]
    notes: Optional[str]
    status: ListingStatus
    created_at: int
    expires_at: Optional[int] = None
    external_ref: Optional[str] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "Listing":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            have=row["have"],
            want=row["want"],
            price=row["price"],
            platform=row["platform"],
            notes=row["notes"],
            status=ListingStatus(row["status"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            external_ref=row["external_ref"],
        )

    def is_expired(self, now: int) -> bool:
        """Whether an active listing has passed its expiry time."""

        return (
            self.status is ListingStatus.ACTIVE
            and self.expires_at is not None
            and self.expires_at <= now
        )


def _optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_have_want(have: Optional[str], want: Optional[str]) -> None:
    if not have or not have.strip():
        raise ValidationError("HAVE must not be empty")
    if not want or not want.strip():
        raise ValidationError("WANT must not be empty")


def _check_window(limit: int, offset: int = 0) -> None:
    if limit < 1:
        raise ValidationError("limit must be at least 1")
    if offset < 0:
        raise ValidationError("offset must not be negative")


class ListingStore:
    """Data access helper for trade listings built on top of SQLite.

    Mutations are serialised through a single lock and guarded by
    ``status = 'active'`` conditions, so two racing transitions on the same
    listing can never both succeed.
    """

    def __init__(self, path: str | os.PathLike, *, clock: Callable[[], int] = now_ms) -> None:
        self.path = os.fspath(path)
        self._clock = clock
        self._lock = asyncio.Lock()

    def _ensure_directory(self) -> None:
        directory = os.path.dirname(self.path)
        if not directory:
            return
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"Trade storage unavailable: {exc}") from exc

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.Error as exc:
            raise StorageUnavailable(f"Trade storage unavailable: {exc}") from exc

    async def setup(self) -> None:
        self._ensure_directory()
        async with self._connect() as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS listings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    have TEXT NOT NULL,
                    want TEXT NOT NULL,
                    price TEXT,
                    platform TEXT,
                    notes TEXT,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'traded', 'closed', 'expired')),
                    created_at INTEGER NOT NULL,
                    expires_at INTEGER,
                    external_ref TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_listings_active
                    ON listings(status, created_at);
                """
            )
            await db.commit()

    async def _fetch(self, db: aiosqlite.Connection, listing_id: int) -> Listing | None:
        cursor = await db.execute(
            f"SELECT {_COLUMNS} FROM listings WHERE id = ?", (listing_id,)
        )
        row = await cursor.fetchone()
        return Listing.from_row(row) if row else None

    async def create(
        self,
        owner_id: str,
        have: str,
        want: str,
        price: Optional[str] = None,
        platform: Optional[str] = None,
        notes: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> Listing:
        validate_have_want(have, want)

        price = _optional_text(price)
        platform = _optional_text(platform)
        notes = _optional_text(notes)
        created_at = self._clock()

        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "INSERT INTO listings(owner_id, have, want, price, platform, notes, status,\n"
                    "created_at, expires_at) VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?)",
                    (owner_id, have, want, price, platform, notes, created_at, expires_at),
                )
                await db.commit()
                listing_id = cursor.lastrowid

        return Listing(
            id=listing_id,
            owner_id=owner_id,
            have=have,
            want=want,
            price=price,
            platform=platform,
            notes=notes,
            status=ListingStatus.ACTIVE,
            created_at=created_at,
            expires_at=expires_at,
        )

    async def attach_external_ref(self, listing_id: int, ref: str) -> Listing:
        async with self._lock:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE listings SET external_ref = ? WHERE id = ?", (ref, listing_id)
                )
                await db.commit()
                if cursor.rowcount == 0:
                    raise NotFound(listing_id)
                listing = await self._fetch(db, listing_id)
        return listing

    async def get(self, listing_id: int) -> Listing:
        async with self._connect() as db:
            listing = await self._fetch(db, listing_id)
        if listing is None:
            raise NotFound(listing_id)
        if listing.is_expired(self._clock()):
            return replace(listing, status=ListingStatus.EXPIRED)
        return listing

    async def list_active(self, limit: int, offset: int = 0) -> List[Listing]:
        _check_window(limit, offset)
        now = await self._sweep_now()
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM listings WHERE {_LIVE}\n"
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (now, limit, offset),
            )
            rows = await cursor.fetchall()
        return [Listing.from_row(row) for row in rows]

    async def list_by_owner(self, owner_id: str, limit: int) -> List[Listing]:
        _check_window(limit)
        now = await self._sweep_now()
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM listings WHERE owner_id = ? AND {_LIVE}\n"
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (owner_id, now, limit),
            )
            rows = await cursor.fetchall()
        return [Listing.from_row(row) for row in rows]

    async def _live_listings(self, *, sweep: bool = True) -> List[Listing]:
        now = await self._sweep_now() if sweep else self._clock()
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM listings WHERE {_LIVE}\n"
                "ORDER BY created_at DESC, id DESC",
                (now,),
            )
            rows = await cursor.fetchall()
        return [Listing.from_row(row) for row in rows]

    async def search(self, keyword: str, limit: int = SEARCH_LIMIT) -> List[Listing]:
        """Return active listings whose HAVE or WANT contains ``keyword``.

        Matching is a case-insensitive substring test done in Python so that
        non-ASCII item names fold the same way as the keyword does.
        """

        _check_window(limit)
        needle = keyword.strip().casefold()
        if not needle:
            return []

        results: List[Listing] = []
        for listing in await self._live_listings():
            if needle in listing.have.casefold() or needle in listing.want.casefold():
                results.append(listing)
                if len(results) >= limit:
                    break
        return results

    async def suggest(self, term: str, limit: int = 25) -> List[str]:
        """Suggest item names from active listings for autocomplete.

        Runs on every keystroke, so expired rows are filtered out without a sweep.
        """

        _check_window(limit)
        names: List[str] = []
        seen = set()
        for listing in await self._live_listings(sweep=False):
            for text in (listing.have, listing.want):
                key = self._normalize_text(text)
                if key and key not in seen:
                    seen.add(key)
                    names.append(text.strip())

        normalized_term = self._normalize_text(term)
        if not normalized_term:
            return names[:limit]

        scored = []
        for position, name in enumerate(names):
            score = fuzz.WRatio(normalized_term, self._normalize_text(name))
            if score >= SUGGEST_SCORE_CUTOFF:
                scored.append((score, position, name))

        scored.sort(key=lambda entry: (-entry[0], entry[1]))
        return [name for _, _, name in scored[:limit]]

    @staticmethod
    def _normalize_text(value: str) -> str:
        return " ".join(value.lower().split())

    async def set_status(
        self,
        listing_id: int,
        actor_id: str,
        is_privileged: bool,
        target: ListingStatus | str,
    ) -> Listing:
        """Move an active listing to ``traded`` or ``closed``.

        Checks run in order: the listing must exist, the actor must own it or
        be privileged, and it must still be active.
        """

        try:
            target = ListingStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown status: {target}") from None
        if target not in USER_TRANSITIONS:
            raise ValidationError(f"Cannot set a trade to {target.value}")

        now = self._clock()
        async with self._lock:
            async with self._connect() as db:
                await self._expire(db, now)
                listing = await self._fetch(db, listing_id)
                if listing is None:
                    await db.commit()
                    raise NotFound(listing_id)
                if actor_id != listing.owner_id and not is_privileged:
                    await db.commit()
                    raise Forbidden(listing_id, actor_id)
                if listing.status is not ListingStatus.ACTIVE:
                    await db.commit()
                    raise PreconditionFailed(listing_id, listing.status.value)

                cursor = await db.execute(
                    "UPDATE listings SET status = ? WHERE id = ? AND status = 'active'",
                    (target.value, listing_id),
                )
                await db.commit()
                if cursor.rowcount == 0:
                    current = await self._fetch(db, listing_id)
                    raise PreconditionFailed(listing_id, current.status.value)

        return replace(listing, status=target)

    @staticmethod
    async def _expire(db: aiosqlite.Connection, now: int) -> int:
        cursor = await db.execute(
            "UPDATE listings SET status = 'expired'\n"
            "WHERE status = 'active' AND expires_at IS NOT NULL AND expires_at <= ?",
            (now,),
        )
        return cursor.rowcount

    async def sweep_expired(self, now: int) -> int:
        """Expire every active listing whose expiry time has been reached.

        Returns the number of listings transitioned; repeating the call with
        the same ``now`` transitions nothing.
        """

        async with self._lock:
            async with self._connect() as db:
                expired = await self._expire(db, now)
                await db.commit()
        return expired

    async def _sweep_now(self) -> int:
        now = self._clock()
        await self.sweep_expired(now)
        return now
