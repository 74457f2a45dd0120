import pytest

import batchwise
from batchwise import BatchwiseError, ConstraintViolationError, UnresolvedReferenceError

from .schema import audit_logs, companies, departments, fetch_rows, users


def _user(n: int, **extra):
    return {"email": f"user{n}@example.com", "username": f"user{n}", **extra}


@pytest.mark.asyncio
async def test_upsert_returns_keys_in_registration_order(db):
    """Keys come back in the order rows were registered, across chunks."""
    wdb = batchwise.get_preset("w")
    for n in range(5):
        wdb.register("users", _user(n))

    ids = await wdb.upsert("users", chunk_size=2)

    assert len(ids) == 5
    rows = await fetch_rows(users)
    by_id = {row["id"]: row["email"] for row in rows}
    assert [by_id[i] for i in ids] == [f"user{n}@example.com" for n in range(5)]
    assert wdb.upsert_builder.pending("users") == ()


@pytest.mark.asyncio
async def test_references_resolve_to_generated_keys(db):
    """A department staged against a staged company gets the company's new id."""
    wdb = batchwise.get_preset("w")
    company = wdb.register("companies", {"name": "Acme"})
    wdb.register("departments", {"name": "R&D", "company_id": company})

    [company_id] = await wdb.upsert("companies")
    [department_id] = await wdb.upsert("departments")

    assert wdb.upsert_builder.resolve(company) == company_id
    [department] = await fetch_rows(departments, departments.c.id == department_id)
    assert department["company_id"] == company_id


@pytest.mark.asyncio
async def test_flushing_dependent_first_fails_and_writes_nothing(db):
    wdb = batchwise.get_preset("w")
    company = wdb.register("companies", {"name": "Acme"})
    wdb.register("departments", {"name": "R&D", "company_id": company})

    with pytest.raises(UnresolvedReferenceError) as info:
        await wdb.upsert("departments")

    assert info.value.table == "departments"
    assert info.value.field == "company_id"
    assert "company_id" in str(info.value)
    assert await fetch_rows(departments) == []
    # The staged rows survive, so flushing in the right order still works.
    assert len(wdb.upsert_builder.pending("departments")) == 1
    await wdb.upsert("companies")
    assert len(await wdb.upsert("departments")) == 1


@pytest.mark.asyncio
async def test_upsert_updates_rows_matching_a_unique_key(db):
    first = batchwise.get_preset("w")
    first.register("users", _user(1))
    [user_id] = await first.upsert("users")

    second = batchwise.get_preset("w")
    second.register("users", _user(1, username="renamed", bio="hello"))
    second.register("users", _user(2))
    ids = await second.upsert("users")

    assert ids[0] == user_id
    assert ids[1] != user_id
    [row] = await fetch_rows(users, users.c.id == user_id)
    assert row["username"] == "renamed"
    assert row["bio"] == "hello"


@pytest.mark.asyncio
async def test_upsert_by_primary_key(db):
    wdb = batchwise.get_preset("w")
    wdb.register("companies", {"name": "Acme"})
    [company_id] = await wdb.upsert("companies")

    wdb.register("companies", {"id": company_id, "name": "Acme Holdings"})
    assert await wdb.upsert("companies") == [company_id]

    [row] = await fetch_rows(companies)
    assert row["name"] == "Acme Holdings"


@pytest.mark.asyncio
async def test_upsert_with_explicit_conflict_columns(db):
    wdb = batchwise.get_preset("w")
    wdb.register("users", _user(1))
    [user_id] = await wdb.upsert("users")

    wdb.register("users", _user(1, username="again"))
    assert await wdb.upsert("users", conflict_columns=["email"]) == [user_id]


@pytest.mark.asyncio
async def test_rows_with_different_columns_keep_their_positions(db):
    wdb = batchwise.get_preset("w")
    wdb.register("users", _user(1))
    wdb.register("users", _user(2, bio="has a bio"))
    wdb.register("users", _user(3, role="admin"))
    wdb.register("users", _user(4))

    ids = await wdb.upsert("users")

    rows = {row["id"]: row for row in await fetch_rows(users)}
    assert [rows[i]["email"] for i in ids] == [f"user{n}@example.com" for n in (1, 2, 3, 4)]
    assert rows[ids[1]]["bio"] == "has a bio"
    assert rows[ids[2]]["role"] == "admin"
    assert rows[ids[0]]["role"] == "normal"


@pytest.mark.asyncio
async def test_ref_using_another_column(db):
    """A ref can resolve to a non-key column of the written row."""
    wdb = batchwise.get_preset("w")
    user = wdb.register("users", _user(7))
    wdb.register("audit_logs", {"message": user.using("email")})

    await wdb.upsert("users")
    [log_id] = await wdb.upsert("audit_logs")

    [log] = await fetch_rows(audit_logs, audit_logs.c.id == log_id)
    assert log["message"] == "user7@example.com"


@pytest.mark.asyncio
async def test_insert_only_fails_on_conflict(db):
    wdb = batchwise.get_preset("w")
    wdb.register("users", _user(1))
    await wdb.insert_only("users")

    wdb.register("users", _user(2))
    wdb.register("users", _user(1, username="duplicate"))
    with pytest.raises(ConstraintViolationError) as info:
        await wdb.insert_only("users")

    assert info.value.table == "users"
    # The flush ran in one transaction, so user2 was rolled back with it.
    assert [row["email"] for row in await fetch_rows(users)] == ["user1@example.com"]
    assert len(wdb.upsert_builder.pending("users")) == 2


@pytest.mark.asyncio
async def test_upsert_or_insert_modes(db):
    wdb = batchwise.get_preset("w")
    wdb.register("users", _user(1))
    [user_id] = await wdb.upsert_or_insert("users", "insert")

    wdb.register("users", _user(1, username="merged"))
    assert await wdb.upsert_or_insert("users", batchwise.WriteMode.UPSERT) == [user_id]

    wdb.register("users", _user(1))
    with pytest.raises(ConstraintViolationError):
        await wdb.upsert_or_insert("users", "insert")

    with pytest.raises(ValueError):
        await wdb.upsert_or_insert("users", "replace")


@pytest.mark.asyncio
async def test_update_batch_matches_primary_key(db):
    wdb = batchwise.get_preset("w")
    for n in range(3):
        wdb.register("users", _user(n))
    ids = await wdb.upsert("users")

    wdb.register("users", {"id": ids[0], "bio": "first"})
    wdb.register("users", {"id": ids[2], "bio": "third", "is_verified": True})
    assert await wdb.update_batch("users", chunk_size=1) is None

    rows = {row["id"]: row for row in await fetch_rows(users)}
    assert rows[ids[0]]["bio"] == "first"
    assert rows[ids[1]]["bio"] is None
    assert rows[ids[2]]["bio"] == "third"
    assert rows[ids[2]]["is_verified"] is True
    assert len(rows) == 3


@pytest.mark.asyncio
async def test_update_batch_matches_custom_columns(db):
    wdb = batchwise.get_preset("w")
    wdb.register("users", _user(1))
    await wdb.upsert("users")

    wdb.register("users", {"email": "user1@example.com", "username": "by-email"})
    wdb.register("users", {"email": "missing@example.com", "username": "nobody"})
    await wdb.update_batch("users", match_columns="email")

    rows = await fetch_rows(users)
    assert [row["username"] for row in rows] == ["by-email"]


@pytest.mark.asyncio
async def test_update_batch_requires_match_columns(db):
    wdb = batchwise.get_preset("w")
    wdb.register("users", {"bio": "no key"})
    with pytest.raises(BatchwiseError, match="match column"):
        await wdb.update_batch("users")


@pytest.mark.asyncio
async def test_flush_edge_cases(db):
    wdb = batchwise.get_preset("w")
    assert await wdb.upsert("users") == []
    assert await wdb.update_batch("users") is None

    wdb.register("users", _user(1))
    with pytest.raises(ValueError):
        await wdb.upsert("users", chunk_size=0)

    wdb.register("users", _user(2, nickname="x"))
    with pytest.raises(BatchwiseError, match="nickname"):
        await wdb.upsert("users")


@pytest.mark.asyncio
async def test_rows_sharing_a_conflict_key_map_to_the_same_row(db):
    """Two staged rows with the same email both resolve to the one stored row."""
    wdb = batchwise.get_preset("w")
    wdb.register("users", {"email": "a@example.com", "username": "a"})
    wdb.register("users", {"email": "a@example.com", "username": "b"})
    wdb.register("users", {"email": "c@example.com", "username": "c"})

    ids = await wdb.upsert("users")

    assert ids[0] == ids[1] != ids[2]
    rows = {row["id"]: row for row in await fetch_rows(users)}
    assert len(rows) == 2
    assert rows[ids[0]]["username"] == "b"
    assert rows[ids[2]]["email"] == "c@example.com"


@pytest.mark.asyncio
async def test_ref_to_row_without_primary_key(db):
    wdb = batchwise.get_preset("w")
    await wdb.execute("CREATE TABLE notes (body TEXT NOT NULL)")
    try:
        note = wdb.register("notes", {"body": "keyless"})
        wdb.register("audit_logs", {"message": note})
        wdb.register("audit_logs", {"message": note.using("body")})
        assert await wdb.upsert("notes") == [None]

        with pytest.raises(BatchwiseError, match="no primary key"):
            await wdb.upsert("audit_logs")
        assert await fetch_rows(audit_logs) == []
    finally:
        # The declared test metadata is shared between tests.
        batchwise.registry.metadata.remove(batchwise.registry.metadata.tables["notes"])
