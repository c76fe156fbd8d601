import asyncio
from pathlib import Path

import pytest

from arc_trader.database import ListingStatus, ListingStore
from arc_trader.errors import (
    Forbidden,
    NotFound,
    PreconditionFailed,
    StorageUnavailable,
    ValidationError,
)

pytestmark = pytest.mark.asyncio

HOUR = 60 * 60 * 1000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


async def init_store(tmp_path: Path, clock: FakeClock | None = None) -> ListingStore:
    store = ListingStore(tmp_path / "test.db", clock=clock or FakeClock())
    await store.setup()
    return store


async def test_create_starts_active_with_fresh_ids(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)

    first = await store.create("1", "Anvil Blueprint", "Rusted Gear x5", price="10k")
    clock.advance(1)
    second = await store.create("2", "Hullcracker", "Torrente")

    assert first.status is ListingStatus.ACTIVE
    assert first.id != second.id
    assert first.have == "Anvil Blueprint"
    assert first.want == "Rusted Gear x5"
    assert first.created_at == clock.now - 1
    assert first.price == "10k"
    assert second.platform is None

    stored = await store.get(first.id)
    assert stored == first


async def test_create_rejects_blank_have_or_want(tmp_path: Path):
    store = await init_store(tmp_path)

    with pytest.raises(ValidationError):
        await store.create("1", "", "x")
    with pytest.raises(ValidationError):
        await store.create("1", "x", "")
    with pytest.raises(ValidationError):
        await store.create("1", "   ", "x")

    assert await store.list_active(10) == []


async def test_blank_optional_fields_are_stored_as_none(tmp_path: Path):
    store = await init_store(tmp_path)
    listing = await store.create("1", "Ferro", "Kettle", price="  ", notes=" two rolls ")

    stored = await store.get(listing.id)
    assert stored.price is None
    assert stored.notes == "two rolls"


async def test_get_unknown_listing_raises_not_found(tmp_path: Path):
    store = await init_store(tmp_path)

    with pytest.raises(NotFound) as excinfo:
        await store.get(999)
    assert excinfo.value.listing_id == 999


async def test_attach_external_ref_last_write_wins(tmp_path: Path):
    store = await init_store(tmp_path)
    listing = await store.create("1", "Ferro", "Kettle")

    await store.attach_external_ref(listing.id, "10:20")
    updated = await store.attach_external_ref(listing.id, "10:30")

    assert updated.external_ref == "10:30"
    assert (await store.get(listing.id)).external_ref == "10:30"

    with pytest.raises(NotFound):
        await store.attach_external_ref(999, "10:40")


async def test_closed_listing_cannot_be_traded(tmp_path: Path):
    store = await init_store(tmp_path)
    listing = await store.create("owner", "Ferro", "Kettle")

    closed = await store.set_status(listing.id, "owner", False, "closed")
    assert closed.status is ListingStatus.CLOSED

    with pytest.raises(PreconditionFailed) as excinfo:
        await store.set_status(listing.id, "owner", False, "traded")
    assert excinfo.value.status == "closed"
    assert (await store.get(listing.id)).status is ListingStatus.CLOSED


async def test_non_owner_needs_privilege(tmp_path: Path):
    store = await init_store(tmp_path)
    listing = await store.create("owner", "Ferro", "Kettle")

    with pytest.raises(Forbidden):
        await store.set_status(listing.id, "stranger", False, "closed")

    closed = await store.set_status(listing.id, "mod", True, ListingStatus.CLOSED)
    assert closed.status is ListingStatus.CLOSED
    assert closed.owner_id == "owner"


async def test_set_status_checks_existence_then_rights_then_state(tmp_path: Path):
    store = await init_store(tmp_path)

    with pytest.raises(NotFound):
        await store.set_status(42, "owner", True, "traded")

    listing = await store.create("owner", "Ferro", "Kettle")
    await store.set_status(listing.id, "owner", False, "traded")

    # Rights are checked before state, so a stranger is refused outright.
    with pytest.raises(Forbidden):
        await store.set_status(listing.id, "stranger", False, "closed")


async def test_set_status_rejects_non_user_targets(tmp_path: Path):
    store = await init_store(tmp_path)
    listing = await store.create("owner", "Ferro", "Kettle")

    with pytest.raises(ValidationError):
        await store.set_status(listing.id, "owner", False, "expired")
    with pytest.raises(ValidationError):
        await store.set_status(listing.id, "owner", False, "active")
    with pytest.raises(ValidationError):
        await store.set_status(listing.id, "owner", False, "sold")


async def test_racing_transitions_only_one_wins(tmp_path: Path):
    store = await init_store(tmp_path)
    listing = await store.create("owner", "Ferro", "Kettle")

    results = await asyncio.gather(
        store.set_status(listing.id, "owner", False, "traded"),
        store.set_status(listing.id, "mod", True, "closed"),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], PreconditionFailed)
    assert (await store.get(listing.id)).status is successes[0].status


async def test_sweep_expires_at_deadline_and_is_idempotent(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    deadline = clock.now + HOUR
    listing = await store.create("owner", "Ferro", "Kettle", expires_at=deadline)
    forever = await store.create("owner", "Anvil", "Venator")

    assert await store.sweep_expired(deadline - 1) == 0
    assert (await store.get(listing.id)).status is ListingStatus.ACTIVE

    assert await store.sweep_expired(deadline) == 1
    assert await store.sweep_expired(deadline) == 0
    assert await store.sweep_expired(deadline + HOUR) == 0

    clock.now = deadline
    assert (await store.get(listing.id)).status is ListingStatus.EXPIRED
    assert (await store.get(forever.id)).status is ListingStatus.ACTIVE


async def test_reads_hide_logically_expired_listings(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    short = await store.create("owner", "Rifle stock", "Kettle", expires_at=clock.now + HOUR)
    clock.advance(1)
    kept = await store.create("owner", "Rifle scope", "Ferro")

    clock.advance(HOUR)

    # get() reports the expiry even before any sweep has run.
    assert (await store.get(short.id)).status is ListingStatus.EXPIRED
    assert [l.id for l in await store.list_active(10)] == [kept.id]
    assert [l.id for l in await store.list_by_owner("owner", 10)] == [kept.id]
    assert [l.id for l in await store.search("rifle")] == [kept.id]


async def test_expired_listing_cannot_be_closed(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    listing = await store.create("owner", "Ferro", "Kettle", expires_at=clock.now + HOUR)

    clock.advance(HOUR)
    with pytest.raises(PreconditionFailed) as excinfo:
        await store.set_status(listing.id, "owner", False, "closed")
    assert excinfo.value.status == "expired"


async def test_list_active_orders_newest_first_with_paging(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    ids = []
    for index in range(5):
        listing = await store.create(str(index), f"Item {index}", "Coins")
        ids.append(listing.id)
        clock.advance(1000)
    await store.set_status(ids[2], "2", False, "traded")

    newest_first = [ids[4], ids[3], ids[1], ids[0]]
    assert [l.id for l in await store.list_active(10)] == newest_first
    assert [l.id for l in await store.list_active(2)] == newest_first[:2]
    assert [l.id for l in await store.list_active(2, 2)] == newest_first[2:]
    assert await store.list_active(2, 10) == []

    with pytest.raises(ValidationError):
        await store.list_active(0)
    with pytest.raises(ValidationError):
        await store.list_active(5, -1)


async def test_list_by_owner_only_returns_own_active_listings(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    first = await store.create("alice", "Ferro", "Kettle")
    clock.advance(1)
    await store.create("bob", "Anvil", "Venator")
    clock.advance(1)
    second = await store.create("alice", "Hullcracker", "Torrente")
    clock.advance(1)
    closed = await store.create("alice", "Stitcher", "Rattler")
    await store.set_status(closed.id, "alice", False, "closed")

    listings = await store.list_by_owner("alice", 10)
    assert [l.id for l in listings] == [second.id, first.id]
    assert [l.id for l in await store.list_by_owner("alice", 1)] == [second.id]
    assert await store.list_by_owner("carol", 10) == []


async def test_search_matches_have_or_want_case_insensitively(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    oldest = await store.create("1", "Hunting RIFLE", "Coins")
    clock.advance(1)
    await store.create("2", "Shotgun", "Medkits")
    clock.advance(1)
    wanted = await store.create("3", "Coins", "any rifle mod")
    clock.advance(1)
    traded = await store.create("4", "Rifle", "Coins")
    await store.set_status(traded.id, "4", False, "traded")

    results = await store.search("rifle")
    assert [l.id for l in results] == [wanted.id, oldest.id]
    assert all(l.status is ListingStatus.ACTIVE for l in results)

    assert [l.id for l in await store.search("  Rifle ", limit=1)] == [wanted.id]
    assert await store.search("   ") == []
    assert await store.search("50%") == []


async def test_search_defaults_to_twenty_results(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    for index in range(25):
        await store.create(str(index), f"Arc alloy {index}", "Coins")
        clock.advance(1)

    results = await store.search("alloy")
    assert len(results) == 20
    assert results[0].have == "Arc alloy 24"


async def test_suggest_ranks_active_item_names(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    await store.create("1", "Anvil Blueprint", "Rusted Gear")
    clock.advance(1)
    await store.create("2", "anvil blueprint", "Power Cell")
    clock.advance(1)
    closed = await store.create("3", "Venator", "Ferro")
    await store.set_status(closed.id, "3", False, "closed")

    assert await store.suggest("") == ["anvil blueprint", "Power Cell", "Rusted Gear"]
    assert (await store.suggest("anvil bluepr"))[0].lower() == "anvil blueprint"
    assert "Venator" not in await store.suggest("venator")
    assert await store.suggest("", limit=1) == ["anvil blueprint"]


async def test_unreachable_database_raises_storage_unavailable(tmp_path: Path):
    # A directory cannot be opened as an SQLite database file.
    store = ListingStore(tmp_path, clock=FakeClock())

    with pytest.raises(StorageUnavailable):
        await store.setup()
    with pytest.raises(StorageUnavailable):
        await store.create("1", "Ferro", "Kettle")


async def test_suggest_skips_expired_without_sweeping(tmp_path: Path):
    clock = FakeClock()
    store = await init_store(tmp_path, clock)
    await store.create("1", "Ferro", "Kettle", expires_at=clock.now + HOUR)
    await store.create("2", "Anvil", "Venator")

    clock.advance(HOUR)
    suggestions = await store.suggest("")

    assert "Ferro" not in suggestions
    assert "Anvil" in suggestions
    # Autocomplete leaves the expiry transition to the next sweep.
    assert await store.sweep_expired(clock.now) == 1


async def test_unwritable_directory_raises_storage_unavailable(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    store = ListingStore(blocker / "data" / "trades.db", clock=FakeClock())

    with pytest.raises(StorageUnavailable):
        await store.setup()


async def test_setup_creates_missing_directory(tmp_path: Path):
    store = ListingStore(tmp_path / "nested" / "trades.db", clock=FakeClock())
    await store.setup()

    assert (tmp_path / "nested" / "trades.db").exists()
