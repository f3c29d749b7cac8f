"""Typed access to live conversation and session state kept in Redis.

Keys:
    state:{client_id}            ConversationState JSON, expires after inactivity
    session:{ticket_id}          canonical SessionRecord JSON
    session_client:{client_id}   pointer -> ticket_id
    session_group:{group_id}     pointer -> ticket_id

The canonical session record and its two pointers are always written and
removed together inside one MULTI/EXEC transaction.
"""

import json
from typing import Any, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from isp_support.logging_config import get_logger
from isp_support.schemas.conversation import CONVERSATION_SCHEMA_VERSION, ConversationState
from isp_support.schemas.session import SESSION_SCHEMA_VERSION, SessionRecord
from isp_support.services.errors import StoreError

logger = get_logger("session_store")

STATE_PREFIX = "state:"
SESSION_PREFIX = "session:"
SESSION_CLIENT_PREFIX = "session_client:"
SESSION_GROUP_PREFIX = "session_group:"


def state_key(client_id: str) -> str:
    return f"{STATE_PREFIX}{client_id}"


def session_key(ticket_id: str) -> str:
    return f"{SESSION_PREFIX}{ticket_id}"


def session_client_key(client_id: str) -> str:
    return f"{SESSION_CLIENT_PREFIX}{client_id}"


def session_group_key(group_id: str) -> str:
    return f"{SESSION_GROUP_PREFIX}{group_id}"


class SessionStore:
    """Session store adapter over an asyncio Redis client (decode_responses=True)."""

    def __init__(self, client, conversation_ttl_seconds: int = 3600):
        self._client = client
        self.conversation_ttl_seconds = conversation_ttl_seconds

    # Raw operations

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise StoreError("get", f"{key}: {exc}") from exc

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise StoreError("set", f"{key}: {exc}") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client.delete(*keys)
        except RedisError as exc:
            raise StoreError("delete", f"{keys}: {exc}") from exc

    async def list_keys(self, prefix: str) -> list[str]:
        try:
            return [key async for key in self._client.scan_iter(match=f"{prefix}*")]
        except RedisError as exc:
            raise StoreError("list_keys", f"{prefix}: {exc}") from exc

    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable value", extra={"context": {"key": key}})
            await self.delete(key)
            return None

    # Conversation state

    async def get_state(self, client_id: str) -> Optional[ConversationState]:
        data = await self.get_json(state_key(client_id))
        if data is None:
            return None
        if data.get("schema_version") != CONVERSATION_SCHEMA_VERSION:
            logger.info(
                "Discarding conversation state with foreign schema",
                extra={"context": {"client_id": client_id, "schema_version": data.get("schema_version")}},
            )
            await self.delete_state(client_id)
            return None
        try:
            return ConversationState.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"Invalid conversation state for {client_id}: {exc}")
            await self.delete_state(client_id)
            return None

    async def save_state(self, client_id: str, state: ConversationState) -> None:
        await self.set(state_key(client_id), state.model_dump_json(), ttl_seconds=self.conversation_ttl_seconds)

    async def delete_state(self, client_id: str) -> None:
        await self.delete(state_key(client_id))

    # Sessions

    async def save_session(self, record: SessionRecord) -> None:
        payload = record.model_dump_json()
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(session_key(record.ticket_id), payload)
                pipe.set(session_client_key(record.client_id), record.ticket_id)
                pipe.set(session_group_key(record.assigned_group_id), record.ticket_id)
                await pipe.execute()
        except RedisError as exc:
            raise StoreError("save_session", f"{record.ticket_id}: {exc}") from exc

    async def delete_session(self, record: SessionRecord) -> None:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(
                    session_key(record.ticket_id),
                    session_client_key(record.client_id),
                    session_group_key(record.assigned_group_id),
                )
                await pipe.execute()
        except RedisError as exc:
            raise StoreError("delete_session", f"{record.ticket_id}: {exc}") from exc

    async def get_session(self, ticket_id: str) -> Optional[SessionRecord]:
        data = await self.get_json(session_key(ticket_id))
        if data is None:
            return None
        if data.get("schema_version") != SESSION_SCHEMA_VERSION:
            raise StoreError("get_session", f"{ticket_id}: unsupported schema {data.get('schema_version')}")
        try:
            return SessionRecord.model_validate(data)
        except ValidationError as exc:
            raise StoreError("get_session", f"{ticket_id}: {exc}") from exc

    async def _resolve_pointer(self, pointer: str) -> Optional[SessionRecord]:
        ticket_id = await self.get(pointer)
        if not ticket_id:
            return None
        record = await self.get_session(ticket_id)
        if record is None:
            logger.warning(
                "Dangling session pointer removed",
                extra={"context": {"pointer": pointer, "ticket_id": ticket_id}},
            )
            await self.delete(pointer)
        return record

    async def find_session_by_client(self, client_id: str) -> Optional[SessionRecord]:
        return await self._resolve_pointer(session_client_key(client_id))

    async def find_session_by_group(self, group_id: str) -> Optional[SessionRecord]:
        return await self._resolve_pointer(session_group_key(group_id))

    async def list_sessions(self) -> list[SessionRecord]:
        records = []
        for key in await self.list_keys(SESSION_PREFIX):
            record = await self.get_session(key[len(SESSION_PREFIX):])
            if record is not None:
                records.append(record)
        return records

    async def busy_groups(self) -> dict[str, str]:
        """Map of group_id -> ticket_id for every group pointer present."""
        groups = {}
        for key in await self.list_keys(SESSION_GROUP_PREFIX):
            ticket_id = await self.get(key)
            if ticket_id:
                groups[key[len(SESSION_GROUP_PREFIX):]] = ticket_id
        return groups
