from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import create_admin
from database import Base
from models import UserRole
from schemas import UserIn
from services import UserService
from tokens import resolve_access_token


def test_create_admin_then_reissue_token() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, token = create_admin.create_admin(session, "root")
        assert user.role == UserRole.admin
        assert resolve_access_token(token) == user.id

        again, second = create_admin.create_admin(session, "root")
        assert again.id == user.id
        assert resolve_access_token(second) == user.id


def test_existing_regular_user_is_not_promoted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        UserService(session).create(UserIn(username="alice"))

        with pytest.raises(ValueError):
            create_admin.create_admin(session, "alice")


def test_main_prints_token(monkeypatch, capsys) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    @contextmanager
    def scope():
        with Session(engine) as session:
            yield session
            session.commit()

    monkeypatch.setattr(create_admin, "session_scope", scope)

    assert create_admin.main(["root"]) == 0

    out = capsys.readouterr().out
    assert "user_id=1" in out
    token = out.split("token=", 1)[1].strip()
    assert resolve_access_token(token) == 1
