"""
Inventory Service — ユーザー (Credential Store)

登録とログインのみ。ユーザーは登録後に変更・削除されない。
"""

import logging

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import hash_password, issue_token, verify_password
from .errors import DuplicateUsername, InvalidCredentials, UserNotFound

logger = logging.getLogger(__name__)


async def register(session: AsyncSession, username: str, password: str, role: str) -> int:
    """ユーザーを作成して id を返す。username が重複していれば DuplicateUsername。"""
    password_hash = hash_password(password)
    try:
        await session.execute(
            text("INSERT INTO users (username, password, role) VALUES (:username, :password, :role)"),
            {"username": username, "password": password_hash, "role": role},
        )
        result = await session.execute(
            text("SELECT id FROM users WHERE username = :username"),
            {"username": username},
        )
        user_id = result.scalar_one()
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateUsername() from exc

    logger.info("User registered: id=%s role=%s", user_id, role)
    return user_id


async def login(session: AsyncSession, username: str, password: str) -> dict:
    """認証に成功したら {token, role} を返す。"""
    result = await session.execute(
        text("SELECT id, password, role FROM users WHERE username = :username"),
        {"username": username},
    )
    row = result.fetchone()
    if not row:
        raise UserNotFound()
    if not verify_password(password, row.password):
        raise InvalidCredentials()

    return {"token": issue_token(row.id, row.role), "role": row.role}
