from datetime import timedelta

import pytest

from app.core.exceptions import (
    DuplicateEmailError,
    InvalidCredentialsError,
    RefreshTokenExpiredError,
    TokenInvalidatedError,
    TokenInvalidError,
    UnknownRefreshTokenError,
)
from app.core.security import create_refresh_token, hash_secret, utcnow
from app.models.security import RefreshToken
from app.models.user import User
from app.schemas.user import RegisterRequest
from app.services.session_service import session_service
from app.services.token_service import token_service
from app.services.user_service import user_service


def _register(db, email="alice@example.com", password="s3cret-pass"):
    return session_service.register(
        db,
        RegisterRequest(name="Alice", email=email, password=password),
        ip_address="203.0.113.5",
        user_agent="pytest-agent",
    )


def _records(db, user_id):
    db.expire_all()
    return db.query(RefreshToken).filter(RefreshToken.user_id == user_id).all()


def test_register_creates_customer_and_session(db):
    session = _register(db)
    assert session.user.role == "customer"
    assert session.user.token_version == 0

    records = _records(db, session.user.id)
    assert len(records) == 1
    assert records[0].token_hash == hash_secret(session.refresh_token)
    assert records[0].token_hash != session.refresh_token
    assert records[0].ip_address == "203.0.113.5"
    assert records[0].user_agent == "pytest-agent"


def test_register_rejects_duplicate_email_case_insensitively(db):
    _register(db)
    with pytest.raises(DuplicateEmailError):
        _register(db, email="ALICE@Example.com")


def test_login_yields_fresh_access_tokens(db):
    _register(db)
    first = session_service.login(db, "alice@example.com", "s3cret-pass")
    second = session_service.login(db, "Alice@Example.com", "s3cret-pass")
    assert first.access_token != second.access_token
    assert first.refresh_token != second.refresh_token


def test_login_rejects_bad_credentials_identically(db):
    _register(db)
    with pytest.raises(InvalidCredentialsError) as wrong_password:
        session_service.login(db, "alice@example.com", "nope-nope")
    with pytest.raises(InvalidCredentialsError) as unknown_email:
        session_service.login(db, "bob@example.com", "s3cret-pass")
    assert wrong_password.value.message == unknown_email.value.message
    assert wrong_password.value.status_code == 401


def test_login_rotates_out_previous_refresh_tokens(db):
    registered = _register(db)
    login = session_service.login(db, "alice@example.com", "s3cret-pass")

    with pytest.raises(UnknownRefreshTokenError):
        session_service.refresh(db, registered.refresh_token)

    records = _records(db, registered.user.id)
    assert [r.token_hash for r in records] == [hash_secret(login.refresh_token)]


def test_login_records_last_login(db):
    _register(db)
    session = session_service.login(db, "alice@example.com", "s3cret-pass")
    assert session.user.last_login is not None


def test_refresh_mints_new_access_token_without_rotation(db):
    session = _register(db)
    refreshed = session_service.refresh(db, session.refresh_token)
    assert refreshed.access_token != session.access_token
    assert token_service.verify_access_token(db, refreshed.access_token).user_id == session.user.id

    # Fixed session: the same refresh token keeps working
    again = session_service.refresh(db, session.refresh_token)
    assert again.access_token
    assert len(_records(db, session.user.id)) == 1


def test_expired_record_is_deleted_and_never_resurrects(db):
    session = _register(db)
    record = _records(db, session.user.id)[0]
    record.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    with pytest.raises(RefreshTokenExpiredError):
        session_service.refresh(db, session.refresh_token)
    assert _records(db, session.user.id) == []

    with pytest.raises(UnknownRefreshTokenError):
        session_service.refresh(db, session.refresh_token)


def test_signed_token_without_record_is_unknown(db):
    session = _register(db)
    forged = create_refresh_token(session.user)
    with pytest.raises(UnknownRefreshTokenError):
        session_service.refresh(db, forged)


def test_record_with_bad_signature_is_invalid(db):
    session = _register(db)
    bogus = "not.a.jwt"
    db.add(
        RefreshToken(
            user_id=session.user.id,
            token_hash=hash_secret(bogus),
            expires_at=utcnow() + timedelta(days=1),
        )
    )
    db.commit()
    with pytest.raises(TokenInvalidError):
        session_service.refresh(db, bogus)


def test_refresh_after_counter_bump_is_invalidated(db):
    session = _register(db)
    user_service.bump_token_version(db, session.user.id)
    db.commit()

    with pytest.raises(TokenInvalidatedError):
        session_service.refresh(db, session.refresh_token)
    assert _records(db, session.user.id) == []


def test_logout_is_idempotent(db):
    session = _register(db)
    assert session_service.logout(db, session.refresh_token) is True
    assert session_service.logout(db, session.refresh_token) is False
    assert session_service.logout(db, "never-issued") is False
    assert session_service.logout(db, None) is False

    with pytest.raises(UnknownRefreshTokenError):
        session_service.refresh(db, session.refresh_token)


def test_revoke_all_kills_outstanding_access_tokens(db):
    session = _register(db)
    refreshed = session_service.refresh(db, session.refresh_token)

    removed = session_service.revoke_all_sessions(db, session.user.id)
    assert removed == 1

    for token in (session.access_token, refreshed.access_token):
        with pytest.raises(TokenInvalidatedError):
            token_service.verify_access_token(db, token)
    with pytest.raises(UnknownRefreshTokenError):
        session_service.refresh(db, session.refresh_token)

    user = db.query(User).filter(User.id == session.user.id).one()
    assert user.token_version == 1

    # A new login works again with the bumped counter
    fresh = session_service.login(db, "alice@example.com", "s3cret-pass")
    assert token_service.verify_access_token(db, fresh.access_token).claims.token_version == 1


def test_counter_only_grows(db):
    session = _register(db)
    for _ in range(3):
        session_service.revoke_all_sessions(db, session.user.id)
    db.expire_all()
    assert db.query(User).filter(User.id == session.user.id).one().token_version == 3


def test_deleting_user_removes_sessions(db):
    session = _register(db)
    user_service.delete_user(db, session.user.id)
    assert db.query(RefreshToken).count() == 0
    with pytest.raises(UnknownRefreshTokenError):
        session_service.refresh(db, session.refresh_token)


def test_purge_expired_only_drops_stale_records(db):
    alice = _register(db)
    bob = _register(db, email="bob@example.com")
    stale = _records(db, alice.user.id)[0]
    stale.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    assert session_service.purge_expired(db) == 1
    assert _records(db, alice.user.id) == []
    assert len(_records(db, bob.user.id)) == 1


def test_access_token_for_deleted_user_is_invalid(db):
    session = _register(db)
    user_service.delete_user(db, session.user.id)
    with pytest.raises(TokenInvalidError):
        token_service.verify_access_token(db, session.access_token)


def test_login_signs_with_counter_bumped_after_authentication(db, session_factory, monkeypatch):
    registered = _register(db)
    authenticate = user_service.authenticate_user

    def authenticate_then_revoke(session, email, password):
        user = authenticate(session, email, password)
        other = session_factory()
        try:
            session_service.revoke_all_sessions(other, user.id)
        finally:
            other.close()
        return user

    monkeypatch.setattr(user_service, "authenticate_user", authenticate_then_revoke)
    fresh = session_service.login(db, "alice@example.com", "s3cret-pass")

    context = token_service.verify_access_token(db, fresh.access_token)
    assert context.claims.token_version == 1
    assert session_service.refresh(db, fresh.refresh_token).access_token
    with pytest.raises(TokenInvalidatedError):
        token_service.verify_access_token(db, registered.access_token)
