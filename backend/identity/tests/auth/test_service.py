"""Tests for AuthService flows against a real SQLite database."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from identity.auth.errors import GENERIC_INTERNAL_MESSAGE, AuthError, ErrorKind
from identity.auth.models import Account, AccountStatus, ExternalIdentity, IdentityProvider, Role
from identity.auth.password import SimpleHasher
from identity.auth.service import INVALID_CREDENTIALS_MESSAGE, UNVERIFIED_EMAIL_MESSAGE
from identity.auth.tokens import digest
from identity.tests.helpers import count_accounts_by_email, set_account_status

PASSWORD = "password123"  # noqa: S105


async def _signup_and_verify(auth_service, mailer, email: str = "a@x.com", password: str = PASSWORD):
    await auth_service.signup(email, password)
    return await auth_service.verify_email(mailer.verification[-1].token)


async def _stored(db, account_id: str) -> Account:
    async with db.transaction(write=False) as tx:
        account = tx.accounts.get_by_id(account_id)
    assert account is not None
    return account


async def _active_sessions(db, account_id: str):
    async with db.transaction(write=False) as tx:
        return tx.sessions.list_active(account_id)


async def _set_status(db, clock, account_id: str, status: AccountStatus) -> None:
    async with db.transaction() as tx:
        set_account_status(tx.connection, account_id, status, clock())


class YieldingHasher(SimpleHasher):
    """Hands control back to the event loop mid-hash, like a real off-thread hasher."""

    async def hash(self, plain: str) -> str:
        await asyncio.sleep(0)
        return await super().hash(plain)


class GatedHasher(SimpleHasher):
    """Parks every password check until released, so other writes can land mid-sign-in."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def verify(self, plain: str, hashed: str) -> bool:
        self.entered.set()
        await self.release.wait()
        return await super().verify(plain, hashed)


class TestSignup:
    async def test_creates_pending_unverified_viewer(self, auth_service, db, clock, mailer):
        account = await auth_service.signup("  A@X.com ", PASSWORD, "Alice")

        assert account.email == "a@x.com"
        assert account.status == AccountStatus.PENDING
        assert account.email_verified is False
        assert account.role == Role.VIEWER
        assert account.full_name == "Alice"
        assert account.identity_provider == IdentityProvider.PASSWORD

        stored = await _stored(db, account.account_id)
        assert stored.credential_hash != PASSWORD
        assert stored.verification_token_expires_at == clock.now + timedelta(hours=24)

    async def test_sends_verification_email_with_token_stored_only_as_digest(self, auth_service, db, mailer):
        account = await auth_service.signup("a@x.com", PASSWORD, "Alice")

        assert len(mailer.verification) == 1
        sent = mailer.verification[0]
        assert sent.to == "a@x.com"
        assert sent.name == "Alice"
        assert len(sent.token) == 64

        stored = await _stored(db, account.account_id)
        assert stored.verification_token_hash == digest(sent.token)
        assert stored.verification_token_hash != sent.token

    async def test_rejects_duplicate_email_case_insensitive(self, auth_service):
        await auth_service.signup("a@x.com", PASSWORD)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signup("A@x.COM", "otherpassword1")
        assert exc_info.value.kind == ErrorKind.CONFLICT

    async def test_concurrent_signups_create_exactly_one_account(self, auth_service, db, monkeypatch):
        # Every pre-check passes before any insert runs, so the unique index must decide.
        monkeypatch.setattr(auth_service, "_hasher", YieldingHasher())

        results = await asyncio.gather(
            *(auth_service.signup("race@x.com", PASSWORD) for _ in range(5)),
            return_exceptions=True,
        )

        accounts = [r for r in results if isinstance(r, Account)]
        errors = [r for r in results if isinstance(r, AuthError)]
        assert len(accounts) == 1
        assert len(errors) == 4
        assert all(e.kind == ErrorKind.CONFLICT for e in errors)
        async with db.transaction(write=False) as tx:
            assert count_accounts_by_email(tx.connection, "race@x.com", include_deleted=True) == 1

    @pytest.mark.parametrize(
        ("email", "password", "full_name"),
        [
            ("not-an-email", PASSWORD, None),
            ("", PASSWORD, None),
            ("a@x.com", "short", None),
            ("a@x.com", "x" * 73, None),
            ("a@x.com", "é" * 37, None),  # 37 chars but 74 UTF-8 bytes
            ("a@x.com", PASSWORD, "n" * 121),
        ],
    )
    async def test_rejects_invalid_input(self, auth_service, db, mailer, email, password, full_name):
        with pytest.raises(AuthError) as exc_info:
            await auth_service.signup(email, password, full_name)

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert mailer.verification == []

    async def test_mail_failure_does_not_fail_signup(self, auth_service, db, mailer):
        mailer.fail = True

        account = await auth_service.signup("a@x.com", PASSWORD)

        assert (await _stored(db, account.account_id)).status == AccountStatus.PENDING

    async def test_unexpected_failure_is_internal_and_persists_nothing(self, auth_service, db, monkeypatch):
        async def broken_hash(_plain: str) -> str:
            raise RuntimeError("hasher exploded")

        monkeypatch.setattr(auth_service._hasher, "hash", broken_hash)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signup("a@x.com", PASSWORD)

        assert exc_info.value.kind == ErrorKind.INTERNAL
        assert exc_info.value.message == GENERIC_INTERNAL_MESSAGE
        assert "exploded" not in exc_info.value.message
        async with db.transaction(write=False) as tx:
            assert tx.accounts.get_by_email("a@x.com") is None

    async def test_hash_timeout_is_internal(self, auth_service, monkeypatch):
        async def slow_hash(_plain: str) -> str:
            raise TimeoutError

        monkeypatch.setattr(auth_service._hasher, "hash", slow_hash)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signup("a@x.com", PASSWORD)
        assert exc_info.value.kind == ErrorKind.INTERNAL


class TestVerifyEmail:
    async def test_activates_account_and_creates_session(self, auth_service, db, clock, mailer):
        account = await auth_service.signup("a@x.com", PASSWORD)

        signed_in = await auth_service.verify_email(mailer.verification[0].token, ip_address="10.0.0.1")

        assert signed_in.account.status == AccountStatus.ACTIVE
        assert signed_in.account.email_verified is True
        assert signed_in.account.email_verified_at == clock.now
        assert signed_in.session.account_id == account.account_id
        assert signed_in.session.ip_address == "10.0.0.1"
        stored = await _stored(db, account.account_id)
        assert stored.status == AccountStatus.ACTIVE
        assert stored.verification_token_hash is None
        assert stored.verification_token_expires_at is None

    async def test_reused_token_is_not_found(self, auth_service, mailer):
        await _signup_and_verify(auth_service, mailer)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.verify_email(mailer.verification[0].token)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_unknown_token_is_not_found(self, auth_service):
        with pytest.raises(AuthError) as exc_info:
            await auth_service.verify_email("0" * 64)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_empty_token_is_validation_failure(self, auth_service):
        with pytest.raises(AuthError) as exc_info:
            await auth_service.verify_email("")
        assert exc_info.value.kind == ErrorKind.VALIDATION

    async def test_expired_token_is_unauthorized_and_changes_nothing(self, auth_service, db, clock, mailer):
        account = await auth_service.signup("a@x.com", PASSWORD)
        clock.advance(timedelta(hours=24))

        with pytest.raises(AuthError) as exc_info:
            await auth_service.verify_email(mailer.verification[0].token)

        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        assert (await _stored(db, account.account_id)).status == AccountStatus.PENDING
        assert await _active_sessions(db, account.account_id) == []

    async def test_token_valid_until_just_before_expiry(self, auth_service, clock, mailer):
        await auth_service.signup("a@x.com", PASSWORD)
        clock.advance(timedelta(hours=24) - timedelta(seconds=1))

        signed_in = await auth_service.verify_email(mailer.verification[0].token)
        assert signed_in.account.status == AccountStatus.ACTIVE

    async def test_account_no_longer_pending_is_forbidden(self, auth_service, db, clock, mailer):
        account = await auth_service.signup("a@x.com", PASSWORD)
        await _set_status(db, clock, account.account_id, AccountStatus.SUSPENDED)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.verify_email(mailer.verification[0].token)
        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    async def test_session_failure_rolls_back_activation(self, auth_service, db, mailer, monkeypatch):
        account = await auth_service.signup("a@x.com", PASSWORD)

        def broken_create(*_args, **_kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(auth_service._sessions, "create", broken_create)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.verify_email(mailer.verification[0].token)

        assert exc_info.value.kind == ErrorKind.INTERNAL
        stored = await _stored(db, account.account_id)
        assert stored.status == AccountStatus.PENDING
        assert stored.verification_token_hash == digest(mailer.verification[0].token)


class TestSignin:
    async def test_unknown_email_and_wrong_password_look_identical(self, auth_service, mailer):
        await _signup_and_verify(auth_service, mailer)

        with pytest.raises(AuthError) as unknown:
            await auth_service.signin("nobody@x.com", PASSWORD)
        with pytest.raises(AuthError) as wrong:
            await auth_service.signin("a@x.com", "wrongpassword")

        assert unknown.value.kind == wrong.value.kind == ErrorKind.UNAUTHORIZED
        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS_MESSAGE

    async def test_unverified_account_gets_new_link_and_no_session(self, auth_service, db, mailer):
        account = await auth_service.signup("a@x.com", PASSWORD)
        first_token = mailer.verification[0].token

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("a@x.com", PASSWORD)

        assert exc_info.value.kind == ErrorKind.FORBIDDEN
        assert exc_info.value.message == UNVERIFIED_EMAIL_MESSAGE
        assert len(mailer.verification) == 2
        assert mailer.verification[1].token != first_token
        assert await _active_sessions(db, account.account_id) == []

    async def test_reissued_link_replaces_the_old_one(self, auth_service, mailer):
        await auth_service.signup("a@x.com", PASSWORD)
        with pytest.raises(AuthError):
            await auth_service.signin("a@x.com", PASSWORD)

        with pytest.raises(AuthError) as stale:
            await auth_service.verify_email(mailer.verification[0].token)
        assert stale.value.kind == ErrorKind.NOT_FOUND

        signed_in = await auth_service.verify_email(mailer.verification[1].token)
        assert signed_in.account.email_verified is True

    async def test_unverified_signin_forbidden_even_when_mail_fails(self, auth_service, mailer):
        await auth_service.signup("a@x.com", PASSWORD)
        mailer.fail = True

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("a@x.com", PASSWORD)
        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    async def test_verified_signin_returns_fresh_session(self, auth_service, mailer):
        verified = await _signup_and_verify(auth_service, mailer)

        signed_in = await auth_service.signin("A@x.com", PASSWORD, ip_address="10.0.0.2", user_agent="ios")

        assert signed_in.account.account_id == verified.account.account_id
        assert signed_in.session.session_id != verified.session.session_id
        assert signed_in.tokens.access_token != verified.tokens.access_token
        assert signed_in.tokens.refresh_token != verified.tokens.refresh_token
        assert signed_in.session.user_agent == "ios"

    @pytest.mark.parametrize("status", [AccountStatus.SUSPENDED, AccountStatus.DISABLED])
    async def test_blocked_account_is_forbidden(self, auth_service, db, clock, mailer, status):
        verified = await _signup_and_verify(auth_service, mailer)
        await _set_status(db, clock, verified.account.account_id, status)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("a@x.com", PASSWORD)
        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    async def test_blocked_status_not_revealed_without_correct_password(self, auth_service, db, clock, mailer):
        verified = await _signup_and_verify(auth_service, mailer)
        await _set_status(db, clock, verified.account.account_id, AccountStatus.DISABLED)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("a@x.com", "wrongpassword")
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    async def test_deleted_account_is_treated_as_unknown_and_email_is_reusable(self, auth_service, db, clock, mailer):
        verified = await _signup_and_verify(auth_service, mailer)
        await _set_status(db, clock, verified.account.account_id, AccountStatus.DELETED)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("a@x.com", PASSWORD)
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

        fresh = await auth_service.signup("a@x.com", PASSWORD)
        assert fresh.account_id != verified.account.account_id

    async def test_google_account_cannot_use_password_signin(self, auth_service, identity_verifier):
        identity_verifier.identities["tok"] = ExternalIdentity(email="g@x.com", subject="sub-1")
        await auth_service.signin_with_google("tok")

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("g@x.com", PASSWORD)
        assert exc_info.value.message == INVALID_CREDENTIALS_MESSAGE

    async def test_missing_fields_are_validation_failures(self, auth_service):
        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("", "")
        assert exc_info.value.kind == ErrorKind.VALIDATION

    async def test_reset_during_unverified_signin_is_not_undone(self, auth_service, db, mailer, monkeypatch):
        account = await auth_service.signup("a@x.com", PASSWORD)
        await auth_service.request_password_reset("a@x.com")
        gate = GatedHasher()
        monkeypatch.setattr(auth_service, "_hasher", gate)

        signin = asyncio.create_task(auth_service.signin("a@x.com", PASSWORD))
        await gate.entered.wait()
        await auth_service.reset_password(mailer.reset[-1].token, "brand-new-pass1")
        gate.release.set()

        with pytest.raises(AuthError) as exc_info:
            await signin
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        assert exc_info.value.message == INVALID_CREDENTIALS_MESSAGE

        stored = await _stored(db, account.account_id)
        assert stored.credential_hash == await SimpleHasher().hash("brand-new-pass1")
        assert stored.reset_token_hash is None
        assert stored.reset_token_expires_at is None
        assert len(mailer.verification) == 1

        with pytest.raises(AuthError) as old_password:
            await auth_service.signin("a@x.com", PASSWORD)
        assert old_password.value.kind == ErrorKind.UNAUTHORIZED
        with pytest.raises(AuthError) as reused:
            await auth_service.reset_password(mailer.reset[-1].token, "another-pass1")
        assert reused.value.kind == ErrorKind.NOT_FOUND

    async def test_verification_during_unverified_signin_is_not_undone(self, auth_service, db, mailer, monkeypatch):
        account = await auth_service.signup("a@x.com", PASSWORD)
        gate = GatedHasher()
        monkeypatch.setattr(auth_service, "_hasher", gate)

        signin = asyncio.create_task(auth_service.signin("a@x.com", PASSWORD))
        await gate.entered.wait()
        verified = await auth_service.verify_email(mailer.verification[-1].token)
        gate.release.set()

        signed_in = await signin

        assert signed_in.account.email_verified is True
        stored = await _stored(db, account.account_id)
        assert stored.status == AccountStatus.ACTIVE
        assert stored.email_verified is True
        assert stored.email_verified_at == verified.account.email_verified_at
        assert stored.verification_token_hash is None
        assert len(mailer.verification) == 1
        session_ids = {s.session_id for s in await _active_sessions(db, account.account_id)}
        assert session_ids == {verified.session.session_id, signed_in.session.session_id}

    async def test_reset_during_verified_signin_creates_no_session(self, auth_service, db, mailer, monkeypatch):
        verified = await _signup_and_verify(auth_service, mailer)
        await auth_service.request_password_reset("a@x.com")
        gate = GatedHasher()
        monkeypatch.setattr(auth_service, "_hasher", gate)

        signin = asyncio.create_task(auth_service.signin("a@x.com", PASSWORD))
        await gate.entered.wait()
        await auth_service.reset_password(mailer.reset[-1].token, "brand-new-pass1")
        gate.release.set()

        with pytest.raises(AuthError) as exc_info:
            await signin
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        assert await _active_sessions(db, verified.account.account_id) == []


class TestSigninWithGoogle:
    async def test_first_signin_creates_active_verified_account(self, auth_service, identity_verifier, clock):
        identity_verifier.identities["tok"] = ExternalIdentity(
            email="G@x.com",
            subject="google-sub-1",
            name="Gee",
            picture="https://example.com/p.png",
        )

        signed_in = await auth_service.signin_with_google("tok")

        account = signed_in.account
        assert account.email == "g@x.com"
        assert account.identity_provider == IdentityProvider.GOOGLE
        assert account.provider_subject == "google-sub-1"
        assert account.status == AccountStatus.ACTIVE
        assert account.email_verified is True
        assert account.email_verified_at == clock.now
        assert account.role == Role.VIEWER
        assert account.credential_hash is None
        assert account.avatar_url == "https://example.com/p.png"
        assert signed_in.session.account_id == account.account_id

    async def test_returning_user_reuses_account(self, auth_service, identity_verifier):
        identity_verifier.identities["tok"] = ExternalIdentity(email="g@x.com", subject="sub-1")

        first = await auth_service.signin_with_google("tok")
        second = await auth_service.signin_with_google("tok")

        assert second.account.account_id == first.account.account_id
        assert second.session.session_id != first.session.session_id

    async def test_reassigned_email_with_new_subject_is_rejected(self, auth_service, identity_verifier, db):
        identity_verifier.identities["original"] = ExternalIdentity(email="g@x.com", subject="sub-1")
        identity_verifier.identities["new-owner"] = ExternalIdentity(email="g@x.com", subject="sub-2")
        first = await auth_service.signin_with_google("original")

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin_with_google("new-owner")

        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        assert exc_info.value.message == "Invalid Google authentication token"
        assert [s.session_id for s in await _active_sessions(db, first.account.account_id)] == [
            first.session.session_id,
        ]

    @pytest.mark.parametrize("verified", [False, True])
    async def test_password_account_email_conflicts(self, auth_service, identity_verifier, mailer, verified):
        if verified:
            await _signup_and_verify(auth_service, mailer)
        else:
            await auth_service.signup("a@x.com", PASSWORD)
        identity_verifier.identities["tok"] = ExternalIdentity(email="A@X.com", subject="sub-1")

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin_with_google("tok")
        assert exc_info.value.kind == ErrorKind.CONFLICT

    async def test_invalid_token_is_unauthorized_and_creates_nothing(self, auth_service, db):
        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin_with_google("forged")

        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        count = db.connection.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
        assert count == 0

    async def test_session_failure_rolls_back_account_creation(self, auth_service, identity_verifier, db, monkeypatch):
        identity_verifier.identities["tok"] = ExternalIdentity(email="g@x.com", subject="sub-1")

        def broken_create(*_args, **_kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(auth_service._sessions, "create", broken_create)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin_with_google("tok")

        assert exc_info.value.kind == ErrorKind.INTERNAL
        async with db.transaction(write=False) as tx:
            assert tx.accounts.get_by_email("g@x.com") is None

    async def test_blocked_google_account_is_forbidden(self, auth_service, identity_verifier, db, clock):
        identity_verifier.identities["tok"] = ExternalIdentity(email="g@x.com", subject="sub-1")
        first = await auth_service.signin_with_google("tok")
        await _set_status(db, clock, first.account.account_id, AccountStatus.SUSPENDED)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin_with_google("tok")
        assert exc_info.value.kind == ErrorKind.FORBIDDEN


class TestRefreshAccessToken:
    async def test_keeps_refresh_token_byte_for_byte_when_far_from_expiry(self, auth_service, db, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        query = "SELECT refresh_token_hash, refresh_token_expires_at FROM sessions WHERE id = ?"
        before = tuple(db.connection.execute(query, (signed_in.session.session_id,)).fetchone())
        clock.advance(timedelta(hours=1))

        result = await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)

        assert result.rotated is False
        assert result.refresh_token is None
        assert result.access_token != signed_in.tokens.access_token
        assert result.access_token_expires_at == clock.now + timedelta(minutes=15)
        after = tuple(db.connection.execute(query, (signed_in.session.session_id,)).fetchone())
        assert after == before

    async def test_rotates_refresh_token_under_24_hours_remaining(self, auth_service, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        clock.advance(timedelta(days=6, seconds=1))

        result = await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)

        assert result.rotated is True
        assert result.refresh_token != signed_in.tokens.refresh_token
        assert result.refresh_token_expires_at == clock.now + timedelta(days=7)
        assert result.access_token_expires_at == clock.now + timedelta(minutes=15)

    async def test_exactly_24_hours_remaining_does_not_rotate(self, auth_service, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        clock.advance(timedelta(days=6))

        result = await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)
        assert result.rotated is False

    async def test_replaying_rotated_refresh_token_is_unauthorized(self, auth_service, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        account_id = signed_in.account.account_id
        clock.advance(timedelta(days=6, hours=1))
        rotated = await auth_service.refresh_access_token(account_id, signed_in.tokens.refresh_token)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.refresh_access_token(account_id, signed_in.tokens.refresh_token)
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

        again = await auth_service.refresh_access_token(account_id, rotated.refresh_token)
        assert again.rotated is False

    async def test_concurrent_replay_has_a_single_winner(self, auth_service, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        clock.advance(timedelta(days=6, hours=1))

        results = await asyncio.gather(
            *(
                auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, AuthError)]
        assert len(winners) == 1
        assert len(losers) == 2
        assert all(e.kind == ErrorKind.UNAUTHORIZED for e in losers)

    async def test_expired_refresh_token_is_unauthorized(self, auth_service, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        clock.advance(timedelta(days=7))

        with pytest.raises(AuthError) as exc_info:
            await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    @pytest.mark.parametrize("mismatch", ["token", "account"])
    async def test_wrong_token_or_account_is_unauthorized(self, auth_service, mailer, mismatch):
        signed_in = await _signup_and_verify(auth_service, mailer)
        account_id = "someone-else" if mismatch == "account" else signed_in.account.account_id
        refresh = "not-the-token" if mismatch == "token" else signed_in.tokens.refresh_token

        with pytest.raises(AuthError) as exc_info:
            await auth_service.refresh_access_token(account_id, refresh)
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    async def test_old_access_token_stops_working_after_refresh(self, auth_service, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)

        result = await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)

        with pytest.raises(AuthError):
            await auth_service.authenticate(signed_in.tokens.access_token)
        account, session = await auth_service.authenticate(result.access_token)
        assert session.session_id == signed_in.session.session_id
        assert account.account_id == signed_in.account.account_id

    async def test_updates_provenance(self, auth_service, db, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)

        await auth_service.refresh_access_token(
            signed_in.account.account_id,
            signed_in.tokens.refresh_token,
            ip_address="192.0.2.7",
            user_agent="android",
        )

        sessions = await _active_sessions(db, signed_in.account.account_id)
        assert sessions[0].ip_address == "192.0.2.7"
        assert sessions[0].user_agent == "android"

    async def test_blocked_account_cannot_refresh(self, auth_service, db, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        await _set_status(db, clock, signed_in.account.account_id, AccountStatus.DISABLED)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)
        assert exc_info.value.kind == ErrorKind.FORBIDDEN


class TestPasswordReset:
    async def test_reset_replaces_password(self, auth_service, mailer):
        await _signup_and_verify(auth_service, mailer)

        await auth_service.request_password_reset("a@x.com")
        await auth_service.reset_password(mailer.reset[0].token, "newpass1")

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signin("a@x.com", PASSWORD)
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        signed_in = await auth_service.signin("a@x.com", "newpass1")
        assert signed_in.session.is_active

    async def test_reset_closes_existing_sessions(self, auth_service, db, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        await auth_service.request_password_reset("a@x.com")

        await auth_service.reset_password(mailer.reset[0].token, "newpass1")

        assert await _active_sessions(db, signed_in.account.account_id) == []
        with pytest.raises(AuthError) as exc_info:
            await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    async def test_reset_clears_token(self, auth_service, db, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        await auth_service.request_password_reset("a@x.com")
        await auth_service.reset_password(mailer.reset[0].token, "newpass1")

        stored = await _stored(db, signed_in.account.account_id)
        assert stored.reset_token_hash is None
        assert stored.reset_token_expires_at is None
        with pytest.raises(AuthError) as exc_info:
            await auth_service.reset_password(mailer.reset[0].token, "another1")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_unknown_email_gets_silent_success(self, auth_service, mailer):
        await auth_service.request_password_reset("nobody@x.com")
        assert mailer.reset == []

    async def test_google_account_gets_no_reset_email(self, auth_service, identity_verifier, mailer):
        identity_verifier.identities["tok"] = ExternalIdentity(email="g@x.com", subject="sub-1")
        await auth_service.signin_with_google("tok")

        await auth_service.request_password_reset("g@x.com")
        assert mailer.reset == []

    async def test_suspended_account_gets_no_reset_email(self, auth_service, db, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        await _set_status(db, clock, signed_in.account.account_id, AccountStatus.SUSPENDED)

        await auth_service.request_password_reset("a@x.com")
        assert mailer.reset == []

    async def test_expired_token_is_unauthorized(self, auth_service, clock, mailer):
        await _signup_and_verify(auth_service, mailer)
        await auth_service.request_password_reset("a@x.com")
        clock.advance(timedelta(minutes=15))

        with pytest.raises(AuthError) as exc_info:
            await auth_service.reset_password(mailer.reset[0].token, "newpass1")
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    async def test_unknown_token_is_not_found(self, auth_service):
        with pytest.raises(AuthError) as exc_info:
            await auth_service.reset_password("f" * 64, "newpass1")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_weak_new_password_leaves_token_usable(self, auth_service, mailer):
        await _signup_and_verify(auth_service, mailer)
        await auth_service.request_password_reset("a@x.com")

        with pytest.raises(AuthError) as exc_info:
            await auth_service.reset_password(mailer.reset[0].token, "short")
        assert exc_info.value.kind == ErrorKind.VALIDATION

        await auth_service.reset_password(mailer.reset[0].token, "newpass1")

    async def test_newer_request_invalidates_older_link(self, auth_service, mailer):
        await _signup_and_verify(auth_service, mailer)
        await auth_service.request_password_reset("a@x.com")
        await auth_service.request_password_reset("a@x.com")

        with pytest.raises(AuthError) as exc_info:
            await auth_service.reset_password(mailer.reset[0].token, "newpass1")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        await auth_service.reset_password(mailer.reset[1].token, "newpass1")

    async def test_malformed_email_is_validation_failure(self, auth_service):
        with pytest.raises(AuthError) as exc_info:
            await auth_service.request_password_reset("not-an-email")
        assert exc_info.value.kind == ErrorKind.VALIDATION


class TestSessionsAndSignout:
    async def test_authenticate_resolves_account_and_session(self, auth_service, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)

        account, session = await auth_service.authenticate(signed_in.tokens.access_token)

        assert account.account_id == signed_in.account.account_id
        assert session.session_id == signed_in.session.session_id

    async def test_access_token_expires_after_15_minutes(self, auth_service, clock, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)
        clock.advance(timedelta(minutes=15))

        with pytest.raises(AuthError) as exc_info:
            await auth_service.authenticate(signed_in.tokens.access_token)
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    async def test_advertised_expiry_holds_when_signed_in_mid_second(self, auth_service, db, clock, mailer):
        clock.advance(timedelta(microseconds=750_000))
        signed_in = await _signup_and_verify(auth_service, mailer)
        expires_at = signed_in.tokens.access_token_expires_at

        assert expires_at.microsecond == 0
        assert (await _active_sessions(db, signed_in.account.account_id))[0].access_token_expires_at == expires_at
        clock.now = expires_at - timedelta(microseconds=1)
        account, _ = await auth_service.authenticate(signed_in.tokens.access_token)
        assert account.account_id == signed_in.account.account_id

        clock.now = expires_at
        with pytest.raises(AuthError, match="Token expired"):
            await auth_service.authenticate(signed_in.tokens.access_token)

    async def test_signout_revokes_session(self, auth_service, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)

        await auth_service.signout(signed_in.account.account_id, signed_in.session.session_id)

        with pytest.raises(AuthError):
            await auth_service.authenticate(signed_in.tokens.access_token)
        with pytest.raises(AuthError):
            await auth_service.refresh_access_token(signed_in.account.account_id, signed_in.tokens.refresh_token)

    async def test_signout_is_idempotent(self, auth_service, mailer):
        signed_in = await _signup_and_verify(auth_service, mailer)

        await auth_service.signout(signed_in.account.account_id, signed_in.session.session_id)
        await auth_service.signout(signed_in.account.account_id, signed_in.session.session_id)

    async def test_signout_of_foreign_session_is_not_found(self, auth_service, mailer):
        first = await _signup_and_verify(auth_service, mailer, email="a@x.com")
        second = await _signup_and_verify(auth_service, mailer, email="b@x.com")

        with pytest.raises(AuthError) as exc_info:
            await auth_service.signout(first.account.account_id, second.session.session_id)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_verification_session_survives_later_signin(self, auth_service, clock, mailer):
        verified = await _signup_and_verify(auth_service, mailer)
        clock.advance(timedelta(minutes=1))
        signed_in = await auth_service.signin("a@x.com", PASSWORD)

        sessions = await auth_service.list_sessions(verified.account.account_id)

        assert [s.session_id for s in sessions] == [signed_in.session.session_id, verified.session.session_id]
        account, _ = await auth_service.authenticate(verified.tokens.access_token)
        assert account.account_id == verified.account.account_id
