"""
Inventory Service — イベントストア

商品台帳の変更履歴。各コマンドは台帳の更新と同じトランザクションで
ここにイベントを追記する。aggregate_id は商品なら item_id、
会計なら bill_id。
"""

import json
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

_INSERT_EVENT = text("""
    INSERT INTO event_store
        (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
    VALUES
        (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
""").bindparams(bindparam("now", type_=DateTime(timezone=True)))

_SELECT_EVENTS = text("""
    SELECT aggregate_id, aggregate_type, event_type, event_data, version, created_at
    FROM event_store
    WHERE aggregate_id = :agg_id
    ORDER BY version ASC
""").columns(created_at=DateTime(timezone=True))

_SELECT_ALL_EVENTS = text("""
    SELECT aggregate_id, aggregate_type, event_type, event_data, version, created_at
    FROM event_store
    ORDER BY created_at ASC, version ASC
""").columns(created_at=DateTime(timezone=True))


async def current_version(session: AsyncSession, aggregate_id: str) -> int:
    result = await session.execute(
        text("SELECT COALESCE(MAX(version), 0) FROM event_store WHERE aggregate_id = :agg_id"),
        {"agg_id": aggregate_id},
    )
    return result.scalar_one()


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event: BaseModel,
) -> int:
    """
    イベントを追記して新しいバージョンを返す。

    呼び出し側が先に台帳の行を更新しているので、同じ aggregate への
    並行書き込みはその行ロックで直列化される。
    """
    new_version = await current_version(session, aggregate_id) + 1
    await session.execute(
        _INSERT_EVENT,
        {
            "agg_id": aggregate_id,
            "agg_type": aggregate_type,
            "evt_type": type(event).__name__,
            "evt_data": event.model_dump_json(),
            "version": new_version,
            "now": datetime.now(timezone.utc),
        },
    )
    return new_version


def _to_dict(row) -> dict:
    return {
        "aggregate_id": row.aggregate_id,
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data)
        if isinstance(row.event_data, str)
        else row.event_data,
        "version": row.version,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    result = await session.execute(_SELECT_EVENTS, {"agg_id": aggregate_id})
    return [_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(_SELECT_ALL_EVENTS)
    return [_to_dict(row) for row in result.fetchall()]
