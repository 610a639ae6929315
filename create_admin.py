"""
Bootstrap an admin account and print a bearer token for it.

Run after `alembic upgrade head` on a fresh deployment:

    finbot-create-admin admin
"""

import argparse
import logging
from typing import Optional

from sqlalchemy.orm import Session

from database import session_scope
from models import User, UserRole
from schemas import UserIn
from services import NotFoundError, UserService
from tokens import generate_access_token


logger = logging.getLogger(__name__)


def create_admin(session: Session, username: str) -> tuple[User, str]:
    """Create the admin, or reissue a token when it already exists."""
    users = UserService(session)
    try:
        user = users.get_by_username(username)
    except NotFoundError:
        user = users.create(UserIn(username=username, role=UserRole.admin))
        logger.info(f"admin_created: id={user.id} username={user.username}")
    else:
        if user.role != UserRole.admin:
            raise ValueError(f"User '{username}' exists and is not an admin")
        logger.info(f"admin_token_reissued: id={user.id}")
    return user, generate_access_token(user.id)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Create an admin user")
    parser.add_argument("username")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    with session_scope() as session:
        try:
            user, token = create_admin(session, args.username)
        except ValueError as exc:
            parser.error(str(exc))
        print(f"user_id={user.id}")
        print(f"token={token}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
