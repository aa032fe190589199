"""Tests for session issuance, resolution and rotation tickets."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from consoleauth.service.sessions import SessionIssuer


class TestSessions:
    async def test_issue_and_resolve(self, runtime, create_admin):
        user = create_admin()
        session = await runtime.sessions.issue(user, user_agent="ua", ip_addr="10.0.0.1")

        ctx = await runtime.sessions.resolve(session.id)
        assert ctx.user_id == user.id
        assert ctx.role == "admin"
        assert ctx.session_id == session.id
        assert session.ip_addr == "10.0.0.1"

    async def test_session_ids_are_opaque_and_unique(self, runtime, create_admin):
        user = create_admin()
        first = await runtime.sessions.issue(user)
        second = await runtime.sessions.issue(user)

        assert first.id != second.id
        assert user.id not in first.id
        assert len(first.id) >= 43

    async def test_ttl_applied(self, runtime, create_admin):
        user = create_admin()
        session = await runtime.sessions.issue(user)
        lifetime = session.expires_at - session.created_at
        assert lifetime == timedelta(minutes=runtime.settings.session_ttl_minutes)

    async def test_unknown_or_missing_session(self, runtime):
        assert await runtime.sessions.resolve(None) is None
        assert await runtime.sessions.resolve("") is None
        assert await runtime.sessions.resolve("nope") is None

    async def test_expired_session_is_rejected_and_removed(self, runtime, create_admin):
        user = create_admin()
        session = await runtime.sessions.issue(user)
        runtime.store.sessions[session.id].expires_at = datetime.utcnow() - timedelta(seconds=1)

        assert await runtime.sessions.resolve(session.id) is None
        assert runtime.store.get_session(session.id) is None

    async def test_blocked_identity_session_rejected(self, runtime, create_admin):
        user = create_admin()
        session = await runtime.sessions.issue(user)
        runtime.store.set_user_active(user.id, False)

        assert await runtime.sessions.resolve(session.id) is None

    async def test_pending_password_change_session_rejected(self, runtime, create_admin):
        user = create_admin()
        session = await runtime.sessions.issue(user)
        runtime.store.set_must_change_password(user.id, True)

        assert await runtime.sessions.resolve(session.id) is None

    async def test_revoke(self, runtime, create_admin):
        user = create_admin()
        session = await runtime.sessions.issue(user)
        await runtime.sessions.revoke(session.id)
        assert await runtime.sessions.resolve(session.id) is None

    async def test_revoke_all_keeps_excepted_session(self, runtime, create_admin):
        user = create_admin()
        other_user = create_admin("other@example.com")
        keep = await runtime.sessions.issue(user)
        drop = await runtime.sessions.issue(user)
        unrelated = await runtime.sessions.issue(other_user)

        revoked = await runtime.sessions.revoke_all(user.id, except_session_id=keep.id)

        assert revoked == 1
        assert await runtime.sessions.resolve(keep.id) is not None
        assert await runtime.sessions.resolve(drop.id) is None
        assert await runtime.sessions.resolve(unrelated.id) is not None


class TestRotationTickets:
    async def test_ticket_redeems_once(self, runtime, create_admin):
        user = create_admin()
        ticket = await runtime.sessions.issue_rotation_ticket(user.id)

        assert await runtime.sessions.redeem_rotation_ticket(ticket) == user.id
        assert await runtime.sessions.redeem_rotation_ticket(ticket) is None

    async def test_missing_ticket(self, runtime):
        assert await runtime.sessions.redeem_rotation_ticket(None) is None
        assert await runtime.sessions.redeem_rotation_ticket("forged") is None

    async def test_expired_ticket(self, runtime, create_admin):
        user = create_admin()
        ticket = await runtime.sessions.issue_rotation_ticket(user.id)
        runtime.sessions._rotation_tickets[ticket] = (
            user.id,
            datetime.utcnow() - timedelta(seconds=1),
        )

        assert await runtime.sessions.redeem_rotation_ticket(ticket) is None

    async def test_expired_tickets_are_purged(self, runtime, create_admin):
        user = create_admin()
        stale = await runtime.sessions.issue_rotation_ticket(user.id)
        runtime.sessions._rotation_tickets[stale] = (
            user.id,
            datetime.utcnow() - timedelta(seconds=1),
        )

        await runtime.sessions.issue_rotation_ticket(user.id)

        assert stale not in runtime.sessions._rotation_tickets


class TestTicketCache:
    """With a cache configured, rotation tickets live in Redis."""

    def _issuer(self, runtime, cache):
        return SessionIssuer(runtime.store, cache, ttl_minutes=30, rotation_ticket_ttl_seconds=120)

    async def test_sessions_stay_in_store(self, runtime, create_admin):
        user = create_admin()
        cache = AsyncMock()
        issuer = self._issuer(runtime, cache)

        session = await issuer.issue(user)
        assert (await issuer.resolve(session.id)).user_id == user.id
        assert await issuer.revoke_all(user.id) == 1
        assert await issuer.resolve(session.id) is None
        assert cache.mock_calls == []

    async def test_tickets_use_cache(self, runtime, create_admin):
        user = create_admin()
        cache = AsyncMock()
        cache.pop_rotation_ticket.return_value = user.id
        issuer = self._issuer(runtime, cache)

        ticket = await issuer.issue_rotation_ticket(user.id)

        cache.set_rotation_ticket.assert_awaited_once_with(ticket, user.id, 120)
        assert issuer._rotation_tickets == {}
        assert await issuer.redeem_rotation_ticket(ticket) == user.id
        cache.pop_rotation_ticket.assert_awaited_once_with(ticket)

    async def test_cache_miss_returns_none(self, runtime):
        cache = AsyncMock()
        cache.pop_rotation_ticket.return_value = None
        issuer = self._issuer(runtime, cache)

        assert await issuer.redeem_rotation_ticket("gone") is None
