"""
Inventory Service — アクセス制御

トークンから Identity (subject_id, role) を取り出す。
Identity はリクエストごとに一度だけ作られ、各コマンドに明示的に渡される。
"""

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Header
from pydantic import BaseModel, ConfigDict

from .errors import AccessDenied, InvalidToken, MissingToken
from .settings import BCRYPT_ROUNDS, JWT_ALGORITHM, JWT_EXPIRES_MINUTES, JWT_SECRET_KEY

logger = logging.getLogger(__name__)

SELLER = "seller"
CUSTOMER = "customer"
ROLES = (SELLER, CUSTOMER)


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: int
    role: str


# ── パスワード ───────────────────────────────────


def hash_password(plaintext: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(plaintext.encode("utf-8"), salt).decode("utf-8")


def verify_password(plaintext: str, password_hash: str) -> bool:
    return bcrypt.checkpw(plaintext.encode("utf-8"), password_hash.encode("utf-8"))


# ── トークン ─────────────────────────────────────


def issue_token(subject_id: int, role: str) -> str:
    payload: dict = {"sub": str(subject_id), "role": role}
    if JWT_EXPIRES_MINUTES is not None:
        payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRES_MINUTES)
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def authenticate(token: str | None) -> Identity:
    """
    トークンを検証して Identity を返す。

    - トークンなし → MissingToken
    - 署名不正・形式不正・期限切れ → InvalidToken
    """
    if not token:
        raise MissingToken()
    if token.startswith("Bearer "):
        token = token[len("Bearer "):]

    try:
        claims = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return Identity(subject_id=int(claims["sub"]), role=claims["role"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise InvalidToken() from exc


def require_role(identity: Identity, *roles: str) -> None:
    """変更系の操作の前に呼ぶ。許可されていないロールは AccessDenied。"""
    if identity.role not in roles:
        logger.warning(
            "Access denied: subject=%s role=%s required=%s",
            identity.subject_id,
            identity.role,
            "|".join(roles),
        )
        raise AccessDenied()


def role_required(*roles: str):
    """
    FastAPI 依存関数を作る: Authorization ヘッダから Identity を作り、
    ロールを確認する。ボディを受け取るルートはボディ引数を宣言せず、
    この依存関数の後で main.read_body を呼ぶ。
    """

    async def dependency(authorization: str | None = Header(default=None)) -> Identity:
        identity = authenticate(authorization)
        require_role(identity, *roles)
        return identity

    return dependency
