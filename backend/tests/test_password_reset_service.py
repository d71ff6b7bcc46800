import socket
from datetime import timedelta

import pytest

from app.config import settings
from app.core.exceptions import (
    AuthenticationError,
    EmailDeliveryError,
    ResetTokenInvalidError,
    UserNotFoundError,
)
from app.core.security import hash_secret, utcnow, verify_password
from app.models.user import User
from app.services import password_reset_service as reset_module
from app.services.password_reset_service import password_reset_service
from app.services.session_service import session_service
from app.services.token_service import token_service

from conftest import FakeMailer


def _reload(db, user_id):
    db.expire_all()
    return db.query(User).filter(User.id == user_id).one()


def test_request_reset_stores_only_the_digest(db, make_user, mailer):
    user = make_user()
    password_reset_service.request_reset(db, "ALICE@example.com", mailer=mailer)

    assert len(mailer.sent) == 1
    sent = mailer.sent[0]
    assert sent["to"] == "alice@example.com"
    assert sent["url"].startswith(f"{settings.FRONTEND_URL}/auth/reset-password/")

    secret = mailer.last_secret
    assert len(secret) == 64
    stored = _reload(db, user.id)
    assert stored.reset_token_hash == hash_secret(secret)
    assert stored.reset_token_hash != secret
    assert stored.reset_token_expires_at is not None


def test_request_reset_unknown_email(db, mailer):
    with pytest.raises(UserNotFoundError):
        password_reset_service.request_reset(db, "ghost@example.com", mailer=mailer)
    assert mailer.sent == []


def test_delivery_failure_clears_token(db, make_user):
    user = make_user()
    failing = FakeMailer(deliver=False)
    with pytest.raises(EmailDeliveryError):
        password_reset_service.request_reset(db, user.email, mailer=failing)

    stored = _reload(db, user.id)
    assert stored.reset_token_hash is None
    assert stored.reset_token_expires_at is None

    with pytest.raises(ResetTokenInvalidError):
        password_reset_service.consume_reset(db, failing.last_secret, "brand-new-pass")


def test_delivery_exception_clears_token(db, make_user):
    user = make_user()
    with pytest.raises(EmailDeliveryError):
        password_reset_service.request_reset(
            db, user.email, mailer=FakeMailer(raises=socket.timeout("timed out"))
        )
    stored = _reload(db, user.id)
    assert stored.reset_token_hash is None
    assert stored.reset_token_expires_at is None


def test_consume_reset_sets_password_and_is_single_use(db, make_user, mailer):
    user = make_user()
    password_reset_service.request_reset(db, user.email, mailer=mailer)
    secret = mailer.last_secret

    updated = password_reset_service.consume_reset(db, secret, "brand-new-pass")
    assert verify_password("brand-new-pass", updated.password_hash)
    assert not verify_password("s3cret-pass", updated.password_hash)
    assert updated.reset_token_hash is None
    assert updated.reset_token_expires_at is None

    with pytest.raises(ResetTokenInvalidError):
        password_reset_service.consume_reset(db, secret, "another-pass")


def test_new_request_supersedes_old_secret(db, make_user, mailer):
    user = make_user()
    password_reset_service.request_reset(db, user.email, mailer=mailer)
    first = mailer.last_secret
    password_reset_service.request_reset(db, user.email, mailer=mailer)
    second = mailer.last_secret

    with pytest.raises(ResetTokenInvalidError):
        password_reset_service.consume_reset(db, first, "brand-new-pass")
    password_reset_service.consume_reset(db, second, "brand-new-pass")


def test_unknown_secret_is_rejected(db, make_user):
    make_user()
    with pytest.raises(ResetTokenInvalidError):
        password_reset_service.consume_reset(db, "0" * 64, "brand-new-pass")
    with pytest.raises(ResetTokenInvalidError):
        password_reset_service.consume_reset(db, "", "brand-new-pass")


@pytest.mark.parametrize(
    "offset, succeeds",
    [
        (timedelta(minutes=10) - timedelta(microseconds=1), True),
        (timedelta(minutes=10), False),
        (timedelta(minutes=10) + timedelta(microseconds=1), False),
    ],
)
def test_reset_expires_ten_minutes_after_creation(db, make_user, mailer, monkeypatch, offset, succeeds):
    user = make_user()
    created = utcnow()
    monkeypatch.setattr(reset_module, "utcnow", lambda: created)
    password_reset_service.request_reset(db, user.email, mailer=mailer)

    monkeypatch.setattr(reset_module, "utcnow", lambda: created + offset)
    if succeeds:
        password_reset_service.consume_reset(db, mailer.last_secret, "brand-new-pass")
    else:
        with pytest.raises(ResetTokenInvalidError):
            password_reset_service.consume_reset(db, mailer.last_secret, "brand-new-pass")


def test_reset_keeps_sessions_by_default(db, make_user, mailer):
    make_user()
    session = session_service.login(db, "alice@example.com", "s3cret-pass")
    password_reset_service.request_reset(db, "alice@example.com", mailer=mailer)
    password_reset_service.consume_reset(db, mailer.last_secret, "brand-new-pass")

    assert token_service.verify_access_token(db, session.access_token).user_id == session.user.id
    assert session_service.refresh(db, session.refresh_token).access_token


def test_reset_can_revoke_sessions(db, make_user, mailer, monkeypatch):
    monkeypatch.setattr(settings, "PASSWORD_RESET_REVOKES_SESSIONS", True)
    make_user()
    session = session_service.login(db, "alice@example.com", "s3cret-pass")
    password_reset_service.request_reset(db, "alice@example.com", mailer=mailer)
    updated = password_reset_service.consume_reset(db, mailer.last_secret, "brand-new-pass")

    assert updated.token_version == 1
    with pytest.raises(AuthenticationError):
        token_service.verify_access_token(db, session.access_token)
    with pytest.raises(AuthenticationError):
        session_service.refresh(db, session.refresh_token)
