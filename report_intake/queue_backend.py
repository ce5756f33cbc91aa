from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from report_intake.runtime_profile import env_int

# Discarded bodies are kept for inspection, then expire.
DISCARDED_MESSAGE_TTL_S = 7 * 24 * 3600


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _is_due(available_at: Any) -> bool:
    if not isinstance(available_at, str) or not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= datetime.now(UTC)


def _due_at(delay_ms: int) -> str:
    return (datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()


class InMemoryQueueBackend:
    """Process-local queue with delayed redelivery; one consumer sees a message at a time."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                queue_name=queue_name,
                payload=dict(payload),
                attempt=0,
                available_at=(
                    available_at.astimezone(UTC).isoformat()
                    if isinstance(available_at, datetime)
                    else _utcnow_iso()
                ),
            )
            self._queues.setdefault(queue_name, deque()).append(msg)
            return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            size = len(queue)
            scanned = 0
            while scanned < size:
                msg = queue.popleft()
                if _is_due(msg.available_at):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
                scanned += 1
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            self._inflight.pop(message_id, None)

    def nack(
        self,
        *,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.attempt += 1
            if requeue:
                msg.available_at = _due_at(delay_ms)
                self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis package is required for redis queue backend") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue; message bodies live in their own keys, lists/sets hold ids."""

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "intake",
        client: Any = None,
        discard_ttl_s: int = DISCARDED_MESSAGE_TTL_S,
    ) -> None:
        if client is None and not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or "intake"
        self._discard_ttl_s = max(1, int(discard_ttl_s))
        self._lock = threading.RLock()
        if client is None:
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, *, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, *, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _msg_key(self, *, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _track_keys(self, *keys: str) -> None:
        for key in keys:
            self._client.sadd(self._registry_key(), key)

    def _load_msg(self, *, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id=message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, *, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id=message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            message_id = f"msg_{uuid.uuid4().hex[:12]}"
            data = {
                "queue_name": queue_name,
                "payload": dict(payload),
                "attempt": 0,
                "status": "pending",
                "available_at": (
                    available_at.astimezone(UTC).isoformat()
                    if isinstance(available_at, datetime)
                    else _utcnow_iso()
                ),
            }
            pending_key = self._pending_key(queue_name=queue_name)
            self._save_msg(message_id=message_id, data=data)
            self._client.rpush(pending_key, message_id)
            self._track_keys(
                pending_key,
                self._inflight_key(queue_name=queue_name),
                self._msg_key(message_id=message_id),
            )
            return self._to_message(message_id, data)

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(queue_name=queue_name)
            inflight_key = self._inflight_key(queue_name=queue_name)
            pending_count = int(self._client.llen(pending_key))
            scanned = 0
            while scanned < pending_count:
                raw_message_id = self._client.lpop(pending_key)
                if not isinstance(raw_message_id, str) or not raw_message_id:
                    return None
                msg_data = self._load_msg(message_id=raw_message_id)
                if msg_data is None:
                    scanned += 1
                    continue
                if not _is_due(msg_data.get("available_at")):
                    self._client.rpush(pending_key, raw_message_id)
                    scanned += 1
                    continue
                msg_data["status"] = "inflight"
                self._save_msg(message_id=raw_message_id, data=msg_data)
                self._client.sadd(inflight_key, raw_message_id)
                return self._to_message(raw_message_id, msg_data)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            msg_data = self._load_msg(message_id=message_id)
            if msg_data is None or msg_data.get("status") != "inflight":
                return
            inflight_key = self._inflight_key(queue_name=str(msg_data.get("queue_name", "")))
            self._client.srem(inflight_key, message_id)
            self._client.delete(self._msg_key(message_id=message_id))

    def nack(
        self,
        *,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            msg_data = self._load_msg(message_id=message_id)
            if msg_data is None or msg_data.get("status") != "inflight":
                return None
            queue_name = str(msg_data.get("queue_name", ""))
            inflight_key = self._inflight_key(queue_name=queue_name)
            msg_data["attempt"] = int(msg_data.get("attempt", 0)) + 1
            self._client.srem(inflight_key, message_id)
            if requeue:
                msg_data["status"] = "pending"
                msg_data["available_at"] = _due_at(delay_ms)
                self._save_msg(message_id=message_id, data=msg_data)
                self._client.lpush(self._pending_key(queue_name=queue_name), message_id)
            else:
                msg_data["status"] = "discarded"
                msg_key = self._msg_key(message_id=message_id)
                self._save_msg(message_id=message_id, data=msg_data)
                self._client.expire(msg_key, self._discard_ttl_s)
                self._client.srem(self._registry_key(), msg_key)
            return self._to_message(message_id, msg_data)

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(queue_name=queue_name)))

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry)


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("INTAKE_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when INTAKE_QUEUE_BACKEND=redis")
        namespace = env.get("INTAKE_QUEUE_KEY_PREFIX", "intake")
        return RedisQueueBackend(
            dsn=dsn,
            namespace=namespace,
            discard_ttl_s=env_int(env, "INTAKE_QUEUE_DISCARD_TTL_S", default=DISCARDED_MESSAGE_TTL_S, minimum=1),
        )
    raise RuntimeError(f"unsupported queue backend: {backend}")
