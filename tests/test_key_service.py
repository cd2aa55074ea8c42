import asyncio

import pytest

from keygate.core import (
    AuditAction,
    DuplicateIdentifierError,
    KeyFilter,
    KeyService,
    KeyState,
    KeyValidationError,
    RevokeOutcome,
    StorageError,
    VerifyReason,
)
from keygate.storage import AuditLog, KeyStore, connect, init_schema


def sequence_generator(*identifiers):
    """Generator stub returning the given identifiers in order."""
    calls = []
    values = iter(identifiers)

    def generate(entropy_bytes):
        calls.append(entropy_bytes)
        return next(values)

    generate.calls = calls
    return generate


class TestIssue:

    @pytest.mark.asyncio
    async def test_issue_returns_active_key(self, key_service, creator, clock):
        key = await key_service.issue(duration_class="day", notes="for the raid", **creator)

        assert len(key.identifier) == 16
        assert key.creator_id == creator["creator_id"]
        assert key.created_at == clock.now
        assert key.expires_at > key.created_at
        assert key.duration_label == "24 Hours"
        assert key.notes == "for the raid"
        assert key.consumed is False

        status = await key_service.check_status(key.identifier)
        assert status.state == KeyState.ACTIVE
        assert status.is_valid

    @pytest.mark.asyncio
    async def test_duration_classes_and_aliases(self, key_service, creator):
        expected = {
            "short": 1, "1h": 1,
            "day": 24, "24h": 24,
            "week": 7 * 24, "7d": 7 * 24,
            "month": 30 * 24, "30d": 30 * 24,
            "permanent": 365 * 24, "PERM": 365 * 24,
        }
        for duration_class, hours in expected.items():
            key = await key_service.issue(duration_class=duration_class, **creator)
            assert (key.expires_at - key.created_at).total_seconds() == hours * 3600

    @pytest.mark.asyncio
    async def test_blank_notes_stored_as_none(self, key_service, creator):
        key = await key_service.issue(duration_class="day", notes="   ", **creator)
        assert key.notes is None

    @pytest.mark.asyncio
    async def test_invalid_input_changes_nothing(self, key_service, audit_log, creator):
        with pytest.raises(KeyValidationError):
            await key_service.issue(duration_class="fortnight", **creator)
        with pytest.raises(KeyValidationError):
            await key_service.issue(duration_class="", **creator)
        with pytest.raises(KeyValidationError):
            await key_service.issue(
                creator_id="  ", creator_name="Alice", creator_handle="alice", duration_class="day",
            )

        assert (await key_service.stats()).total == 0
        assert await audit_log.entries() == []

    @pytest.mark.asyncio
    async def test_issue_writes_create_audit_entry(self, key_service, audit_log, creator):
        key = await key_service.issue(duration_class="week", notes="vip", **creator)

        entries = await audit_log.entries(key_identifier=key.identifier)
        assert len(entries) == 1
        assert entries[0].action == AuditAction.CREATE
        assert entries[0].actor_id == creator["creator_id"]
        assert entries[0].actor_name == creator["creator_name"]
        assert entries[0].details == "Key issued: 7 Days. Notes: vip"

    @pytest.mark.asyncio
    async def test_collision_is_retried(self, key_store, audit_log, clock, creator):
        generator = sequence_generator("AAAA000000000001", "AAAA000000000001", "BBBB000000000002")
        service = KeyService(key_store, audit_log, clock=clock, generator=generator)

        first = await service.issue(duration_class="day", **creator)
        second = await service.issue(duration_class="day", **creator)

        assert first.identifier == "AAAA000000000001"
        assert second.identifier == "BBBB000000000002"
        assert len(generator.calls) == 3

    @pytest.mark.asyncio
    async def test_collision_retries_are_bounded(self, key_store, audit_log, clock, creator):
        generator = sequence_generator(*["AAAA000000000001"] * 4)
        service = KeyService(key_store, audit_log, clock=clock, generator=generator)
        await service.issue(duration_class="day", **creator)

        with pytest.raises(DuplicateIdentifierError):
            await service.issue(duration_class="day", **creator)

        assert len(generator.calls) == 4
        assert (await service.stats()).total == 1

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_issue(self, key_store, db_path, clock, creator):
        audit_connection = await connect(db_path)
        await init_schema(audit_connection)
        broken_audit = AuditLog(audit_connection, clock=clock)
        await audit_connection.close()

        service = KeyService(key_store, broken_audit, clock=clock)
        key = await service.issue(duration_class="day", **creator)

        assert await key_store.find_by_identifier(key.identifier) is not None


class TestVerifyAndConsume:

    @pytest.mark.asyncio
    async def test_first_verify_grants(self, key_service, creator):
        key = await key_service.issue(duration_class="day", **creator)

        result = await key_service.verify_and_consume(key.identifier, "Bob", "42")

        assert result.granted is True
        assert result.reason == VerifyReason.GRANTED
        assert result.message == "Key valid. Access granted."
        assert result.metadata == {
            "created_by": "Alice",
            "duration": "24 Hours",
            "created_at": key.created_at.isoformat(),
        }

        status = await key_service.check_status(key.identifier)
        assert status.state == KeyState.CONSUMED
        assert status.key.redeemer_name == "Bob"
        assert status.key.redeemer_external_id == "42"

    @pytest.mark.asyncio
    async def test_second_verify_is_already_used(self, key_service, creator):
        key = await key_service.issue(duration_class="day", **creator)
        await key_service.verify_and_consume(key.identifier, "Bob", "42")

        result = await key_service.verify_and_consume(key.identifier, "Bob", "42")

        assert result.granted is False
        assert result.reason == VerifyReason.ALREADY_USED
        assert result.metadata == {}

    @pytest.mark.asyncio
    async def test_unknown_key(self, key_service):
        result = await key_service.verify_and_consume("DOESNOTEXIST0000", "Bob", "42")
        assert result.granted is False
        assert result.reason == VerifyReason.NOT_FOUND
        assert result.message == "Key not found"

    @pytest.mark.asyncio
    async def test_expired_key_is_refused_and_left_unconsumed(self, key_service, creator, clock):
        key = await key_service.issue(duration_class="short", **creator)
        clock.advance(hours=1, minutes=1)

        result = await key_service.verify_and_consume(key.identifier, "Bob", "42")

        assert result.reason == VerifyReason.EXPIRED
        status = await key_service.check_status(key.identifier)
        assert status.state == KeyState.EXPIRED
        assert status.key.consumed is False

    @pytest.mark.asyncio
    async def test_key_is_valid_until_just_before_expiry(self, key_service, creator, clock):
        key = await key_service.issue(duration_class="short", **creator)
        clock.advance(minutes=59, seconds=59)

        result = await key_service.verify_and_consume(key.identifier, "Bob", "42")
        assert result.granted is True

    @pytest.mark.asyncio
    async def test_concurrent_verifiers_exactly_one_grant(self, key_service, creator):
        key = await key_service.issue(duration_class="day", **creator)

        results = await asyncio.gather(*[
            key_service.verify_and_consume(key.identifier, f"user{i}", str(i))
            for i in range(50)
        ])

        reasons = [r.reason for r in results]
        assert reasons.count(VerifyReason.GRANTED) == 1
        assert reasons.count(VerifyReason.ALREADY_USED) == 49

        winner = next(r for r in results if r.granted)
        status = await key_service.check_status(key.identifier)
        assert winner.granted and status.key.redeemer_name.startswith("user")

    @pytest.mark.asyncio
    async def test_verify_audit_uses_service_actor(self, key_service, audit_log, creator):
        key = await key_service.issue(duration_class="day", **creator)
        await key_service.verify_and_consume(key.identifier, "Bob", "42")
        await key_service.verify_and_consume(key.identifier, "Eve", "666")

        entries = await audit_log.entries(key_identifier=key.identifier)
        assert [e.action for e in entries] == [AuditAction.VERIFY, AuditAction.CREATE]
        verify = entries[0]
        assert verify.actor_id == "keygate"
        assert verify.actor_name == "KeyGate Verifier"
        assert verify.redeemer_name == "Bob"
        assert verify.details == "Redeemed by Bob (ID: 42)"

    @pytest.mark.asyncio
    async def test_missing_redeemer_is_rejected(self, key_service, creator):
        key = await key_service.issue(duration_class="day", **creator)

        with pytest.raises(KeyValidationError):
            await key_service.verify_and_consume(key.identifier, "", "42")
        with pytest.raises(KeyValidationError):
            await key_service.verify_and_consume(key.identifier, "Bob", None)

        status = await key_service.check_status(key.identifier)
        assert status.state == KeyState.ACTIVE

    @pytest.mark.asyncio
    async def test_storage_fault_is_raised_not_reported_as_state(self, db_path, audit_log, clock):
        connection = await connect(db_path)
        await init_schema(connection)
        service = KeyService(KeyStore(connection), audit_log, clock=clock)
        await connection.close()

        with pytest.raises(StorageError):
            await service.verify_and_consume("AAAA000000000001", "Bob", "42")


class TestRevoke:

    @pytest.mark.asyncio
    async def test_creator_revokes_active_key(self, key_service, audit_log, creator):
        key = await key_service.issue(duration_class="day", **creator)

        outcome = await key_service.revoke(key.identifier, creator["creator_id"])

        assert outcome == RevokeOutcome.DELETED
        assert await key_service.check_status(key.identifier) is None
        result = await key_service.verify_and_consume(key.identifier, "Bob", "42")
        assert result.reason == VerifyReason.NOT_FOUND

        entries = await audit_log.entries(key_identifier=key.identifier)
        assert entries[0].action == AuditAction.REVOKE
        assert entries[0].actor_id == creator["creator_id"]
        assert entries[0].actor_name == creator["creator_name"]

    @pytest.mark.asyncio
    async def test_other_principal_cannot_revoke(self, key_service, creator):
        key = await key_service.issue(duration_class="day", **creator)

        outcome = await key_service.revoke(key.identifier, "999999")

        assert outcome == RevokeOutcome.NOT_OWNED
        assert (await key_service.check_status(key.identifier)).state == KeyState.ACTIVE

    @pytest.mark.asyncio
    async def test_consumed_key_cannot_be_revoked(self, key_service, audit_log, creator):
        key = await key_service.issue(duration_class="day", **creator)
        await key_service.verify_and_consume(key.identifier, "Bob", "42")

        outcome = await key_service.revoke(key.identifier, creator["creator_id"])

        assert outcome == RevokeOutcome.ALREADY_CONSUMED
        assert (await key_service.check_status(key.identifier)).state == KeyState.CONSUMED
        actions = [e.action for e in await audit_log.entries(key_identifier=key.identifier)]
        assert AuditAction.REVOKE not in actions

    @pytest.mark.asyncio
    async def test_unknown_key(self, key_service, creator):
        outcome = await key_service.revoke("DOESNOTEXIST0000", creator["creator_id"])
        assert outcome == RevokeOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_revoke_racing_verify_has_single_winner(self, key_service, creator):
        key = await key_service.issue(duration_class="day", **creator)

        verify, revoke = await asyncio.gather(
            key_service.verify_and_consume(key.identifier, "Bob", "42"),
            key_service.revoke(key.identifier, creator["creator_id"]),
        )

        if verify.granted:
            assert revoke == RevokeOutcome.ALREADY_CONSUMED
        else:
            assert revoke == RevokeOutcome.DELETED
            assert verify.reason == VerifyReason.NOT_FOUND


class TestListingAndStats:

    @pytest.mark.asyncio
    async def test_list_mine_returns_only_own_active_keys(self, key_service, creator, clock):
        used = await key_service.issue(duration_class="day", **creator)
        short = await key_service.issue(duration_class="short", **creator)
        clock.advance(minutes=1)
        active = await key_service.issue(duration_class="week", **creator)
        await key_service.issue(
            creator_id="other", creator_name="Carol", creator_handle="carol", duration_class="day",
        )
        await key_service.verify_and_consume(used.identifier, "Bob", "42")
        clock.advance(hours=2)

        mine = await key_service.list_mine(creator["creator_id"])

        assert [k.identifier for k in mine] == [active.identifier]
        assert short.identifier not in [k.identifier for k in mine]

    @pytest.mark.asyncio
    async def test_list_all_filters(self, key_service, creator, clock):
        used = await key_service.issue(duration_class="day", **creator)
        expired = await key_service.issue(duration_class="short", **creator)
        active = await key_service.issue(duration_class="week", **creator)
        await key_service.verify_and_consume(used.identifier, "Bob", "42")
        clock.advance(hours=2)

        def ids(keys):
            return {k.identifier for k in keys}

        assert ids(await key_service.list_all(KeyFilter.ALL)) == {
            used.identifier, expired.identifier, active.identifier,
        }
        assert ids(await key_service.list_all(KeyFilter.ACTIVE)) == {active.identifier}
        assert ids(await key_service.list_all(KeyFilter.CONSUMED)) == {used.identifier}
        assert ids(await key_service.list_all(KeyFilter.EXPIRED)) == {expired.identifier}
        assert len(await key_service.list_all(KeyFilter.ALL, limit=1)) == 1
        assert len(await key_service.list_all(KeyFilter.ALL, limit=0)) == 1

    @pytest.mark.asyncio
    async def test_stats(self, key_service, creator, clock):
        used = await key_service.issue(duration_class="day", **creator)
        await key_service.issue(duration_class="short", **creator)
        await key_service.issue(duration_class="week", **creator)
        await key_service.issue(duration_class="month", **creator)
        await key_service.verify_and_consume(used.identifier, "Bob", "42")
        clock.advance(hours=2)

        stats = await key_service.stats()

        assert stats.to_dict() == {"total": 4, "used": 1, "valid": 2, "expired": 1}
        assert stats.used + stats.valid + stats.expired == stats.total

    @pytest.mark.asyncio
    async def test_status_of_unknown_key(self, key_service):
        assert await key_service.check_status("DOESNOTEXIST0000") is None
