import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

import crud
import models
from exceptions import NotFoundError, ValidationError

async def _make_file(db: AsyncSession, owner, name="notes.txt", ttl=timedelta(hours=24), created_at=None):
    created_at = created_at or models.utcnow()
    token = uuid.uuid4().hex[:10]
    return await crud.create_file_record(
        db,
        owner_id=owner.id,
        original_name=name,
        storage_name=f"1700000000000-{token}.txt",
        storage_path=f"{token[:2]}/1700000000000-{token}.txt",
        size=9,
        mime_type="text/plain",
        wrapped_key="d3JhcHBlZA==",
        created_at=created_at,
        expires_at=created_at + ttl,
    )

@pytest.mark.asyncio
async def test_create_and_get_user(db_session: AsyncSession):
    user = await crud.create_user(db_session, "  Dave@Example.com ", "Dave")

    assert user.email == "dave@example.com"
    assert (await crud.get_user(db_session, user.id)).id == user.id
    assert (await crud.get_user_by_email(db_session, "DAVE@example.com")).id == user.id
    assert await crud.get_user_by_email(db_session, "nobody@example.com") is None

@pytest.mark.asyncio
async def test_duplicate_email_is_translated_to_validation_error(db_session: AsyncSession):
    await crud.create_user(db_session, "dup@example.com")

    with pytest.raises(ValidationError) as exc_info:
        await crud.create_user(db_session, "dup@example.com")
    assert "email" in str(exc_info.value)

@pytest.mark.asyncio
async def test_file_record_hidden_once_expired(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])

    just_before = file.expires_at - timedelta(seconds=1)
    assert (await crud.get_file_record(db_session, file.id, now=just_before)).id == file.id
    assert await crud.get_file_record(db_session, file.id, now=file.expires_at) is None
    assert await crud.get_files_by_owner(db_session, users["alice"].id, now=file.expires_at) == []

@pytest.mark.asyncio
async def test_share_copies_file_expiry(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])

    share = await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())

    assert share.expires_at == file.expires_at
    assert share.access_count == 0
    assert share.is_accessed is False
    assert share.file.id == file.id
    assert share.recipient.email == "bob@example.com"

@pytest.mark.asyncio
async def test_duplicate_share_for_same_recipient_rejected(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])
    await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())

    with pytest.raises(ValidationError) as exc_info:
        await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())
    assert "recipient_id" in str(exc_info.value)

@pytest.mark.asyncio
async def test_record_share_access_counts_every_download(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])
    share = await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())

    for expected in range(1, 4):
        share = await crud.record_share_access(db_session, share)
        assert share.access_count == expected
        assert share.is_accessed is True

@pytest.mark.asyncio
async def test_record_share_access_does_not_lose_updates_from_stale_copies(db_session: AsyncSession, session_factory, users):
    file = await _make_file(db_session, users["alice"])
    share = await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())

    async with session_factory() as first_db, session_factory() as second_db:
        first = await crud.get_share_for_recipient(first_db, file.id, users["bob"].id)
        second = await crud.get_share_for_recipient(second_db, file.id, users["bob"].id)
        assert first.access_count == second.access_count == 0

        await crud.record_share_access(first_db, first)
        second = await crud.record_share_access(second_db, second)

    assert second.access_count == 2
    assert (await crud.get_share_record(db_session, share.id)).access_count == 2

@pytest.mark.asyncio
async def test_record_share_access_on_removed_share(db_session: AsyncSession, session_factory, users):
    file = await _make_file(db_session, users["alice"])
    share = await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())
    async with session_factory() as other_db:
        await crud.delete_share_record(other_db, share.id)

    share = await crud.record_share_access(db_session, share)

    assert share.access_count == 0
    assert share.is_accessed is False

@pytest.mark.asyncio
async def test_file_record_for_unknown_owner_is_not_found(db_session: AsyncSession):
    ghost = models.UserRecord(id=uuid.uuid4(), email="ghost@example.com")

    with pytest.raises(NotFoundError) as exc_info:
        await _make_file(db_session, ghost)
    assert str(exc_info.value) == "User not found"

@pytest.mark.asyncio
async def test_share_for_vanished_file_is_not_found(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])
    await crud.delete_file_record(db_session, file.id)

    with pytest.raises(NotFoundError) as exc_info:
        await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())
    assert str(exc_info.value) == "File not found"

@pytest.mark.asyncio
async def test_deleting_file_row_cascades_to_shares_in_database(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])
    await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())

    assert await crud.purge_file_records(db_session, [file.id]) == 1

    assert await crud.get_shares_for_file(db_session, file.id) == []

@pytest.mark.asyncio
async def test_delete_file_record_cascades_to_shares(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])
    other = await _make_file(db_session, users["alice"], name="other.txt")
    now = models.utcnow()
    await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, now)
    await crud.create_share_record(db_session, file, users["alice"].id, users["carol"].id, now)
    kept = await crud.create_share_record(db_session, other, users["alice"].id, users["bob"].id, now)

    await crud.delete_file_record(db_session, file.id)

    assert await crud.get_file_record(db_session, file.id) is None
    assert await crud.get_shares_for_file(db_session, file.id) == []
    assert [s.id for s in await crud.get_shares_for_file(db_session, other.id)] == [kept.id]

@pytest.mark.asyncio
async def test_delete_share_leaves_file_and_other_shares(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])
    now = models.utcnow()
    to_bob = await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, now)
    to_carol = await crud.create_share_record(db_session, file, users["alice"].id, users["carol"].id, now)

    await crud.delete_share_record(db_session, to_bob.id)

    assert await crud.get_file_record(db_session, file.id) is not None
    assert await crud.get_share_record(db_session, to_bob.id) is None
    assert (await crud.get_share_record(db_session, to_carol.id)).id == to_carol.id

@pytest.mark.asyncio
async def test_shares_listed_by_sender_and_recipient(db_session: AsyncSession, users):
    file = await _make_file(db_session, users["alice"])
    await crud.create_share_record(db_session, file, users["alice"].id, users["bob"].id, models.utcnow())

    sent = await crud.get_shares_by_sender(db_session, users["alice"].id)
    received = await crud.get_shares_by_recipient(db_session, users["bob"].id)

    assert len(sent) == 1 and sent[0].recipient.id == users["bob"].id
    assert len(received) == 1 and received[0].sender.id == users["alice"].id
    assert await crud.get_shares_by_recipient(db_session, users["carol"].id) == []
    assert await crud.get_shares_by_recipient(db_session, users["bob"].id, now=file.expires_at) == []

@pytest.mark.asyncio
async def test_purge_expired_records(db_session: AsyncSession, users):
    past = models.utcnow() - timedelta(hours=48)
    expired = await _make_file(db_session, users["alice"], created_at=past)
    live = await _make_file(db_session, users["alice"])
    await crud.create_share_record(db_session, expired, users["alice"].id, users["bob"].id, past)
    live_share = await crud.create_share_record(db_session, live, users["alice"].id, users["bob"].id, models.utcnow())

    now = models.utcnow()
    expired_files = await crud.get_expired_files(db_session, now)
    assert [f.id for f in expired_files] == [expired.id]

    assert await crud.purge_expired_shares(db_session, now, [expired.id]) == 1
    assert await crud.purge_file_records(db_session, [expired.id]) == 1
    assert await crud.purge_file_records(db_session, []) == 0
    assert await crud.get_expired_files(db_session, now) == []
    assert (await crud.get_share_record(db_session, live_share.id)).id == live_share.id
