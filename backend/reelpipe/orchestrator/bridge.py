"""Task completion bridge.

Reconciles completion signals from the task provider with the pending
records (assets and generation jobs) that async-submitting agents create.
Signals are treated as at-least-once messages: unknown tokens are
acknowledged, repeated deliveries are no-ops, and the bridge never advances
a pipeline. Follow-up work is queued, not done inline.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelpipe.db.models import Asset, GenerationJob, Pipeline, utcnow
from reelpipe.errors import SignatureError
from reelpipe.orchestrator import state
from reelpipe.services.providers.base import (
    TASK_COMPLETED,
    TASK_FAILED,
    normalize_task_status,
)

logger = logging.getLogger(__name__)

PendingRecord = Union[Asset, GenerationJob]

# Record types that can own a correlation token, searched in order
PENDING_RECORD_TYPES = (
    (Asset, Asset.kie_task_id),
    (GenerationJob, GenerationJob.task_id),
)

RECORD_PENDING = "pending"


@dataclass
class Acknowledgement:
    """What the webhook caller gets back."""

    matched: bool
    applied: bool
    message: str
    token: Optional[str] = None


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Check the HMAC-SHA256 hex signature of the raw body.

    No secret configured means signatures are not required.

    Raises:
        SignatureError: Missing or mismatched signature.
    """
    if not secret:
        return
    if not signature:
        raise SignatureError("Missing signature")
    expected = compute_signature(body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureError("Invalid signature")


def extract_token(payload: dict) -> Optional[str]:
    """Correlation token from a completion payload."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for candidate in (
        payload.get("task_id"),
        payload.get("taskId"),
        payload.get("id"),
        data.get("task_id"),
        data.get("taskId"),
    ):
        if candidate:
            return str(candidate)
    return None


def _dig(payload: dict, *path: str) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def extract_status(payload: dict) -> str:
    raw = (
        payload.get("status")
        or payload.get("state")
        or _dig(payload, "data", "status")
        or _dig(payload, "data", "state")
    )
    return normalize_task_status(raw)


def extract_output_url(payload: dict) -> Optional[str]:
    for path in (
        ("output_url",),
        ("url",),
        ("result", "url"),
        ("data", "url"),
        ("audio_url",),
        ("data", "audio_url"),
    ):
        value = _dig(payload, *path)
        if value:
            return str(value)
    urls = payload.get("urls")
    if isinstance(urls, list) and urls:
        return str(urls[0])
    return None


def extract_error(payload: dict) -> str:
    return str(
        payload.get("error")
        or payload.get("message")
        or _dig(payload, "data", "error")
        or "Task failed"
    )


async def find_pending(session: AsyncSession, token: str) -> Optional[PendingRecord]:
    """Record owning a correlation token, searched across record types."""
    for model, column in PENDING_RECORD_TYPES:
        result = await session.execute(select(model).where(column == token))
        record = result.scalars().first()
        if record is not None:
            return record
    return None


def record_token(record: PendingRecord) -> Optional[str]:
    return record.kie_task_id if isinstance(record, Asset) else record.task_id


async def apply_completion(
    session: AsyncSession, record: PendingRecord, payload: dict
) -> bool:
    """Write a completion payload into a pending record. Commits.

    Only a record that is still pending, owned by a pipeline that is not
    terminal, is mutated. Returns True if the record changed.
    """
    if record.status != RECORD_PENDING:
        logger.info(f"Task {record_token(record)} already {record.status}; ignoring repeat signal")
        return False

    pipeline = await session.get(Pipeline, record.pipeline_id)
    if pipeline is None or state.is_terminal(pipeline.status):
        logger.info(
            f"Task {record_token(record)} belongs to a terminal or missing pipeline; not applied"
        )
        return False

    outcome = extract_status(payload)
    if outcome not in (TASK_COMPLETED, TASK_FAILED):
        return False

    now = utcnow()
    if isinstance(record, Asset):
        if outcome == TASK_COMPLETED:
            record.url = extract_output_url(payload) or ""
            metadata = dict(record.metadata_json or {})
            metadata["result"] = payload
            record.metadata_json = metadata
        else:
            record.error_message = extract_error(payload)
    else:
        if outcome == TASK_COMPLETED:
            record.result = payload
        else:
            record.error_message = extract_error(payload)

    record.status = outcome
    record.completed_at = now
    await session.commit()
    logger.info(f"Task {record_token(record)} marked {outcome}")
    return True


EnqueueFinalize = Callable[[PendingRecord], Awaitable[None]]


class CompletionBridge:
    """Entry point for inbound completion signals."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret: Optional[str],
        enqueue_finalize: EnqueueFinalize,
    ):
        self.session_factory = session_factory
        self.secret = secret
        self.enqueue_finalize = enqueue_finalize

    async def handle(self, body: bytes, signature: Optional[str]) -> Acknowledgement:
        """Verify, correlate and apply one completion signal.

        Raises:
            SignatureError: Bad or missing signature (checked before any lookup).
            ValueError: Body is not a JSON object or carries no token.
        """
        try:
            verify_signature(body, signature, self.secret)
        except SignatureError:
            logger.warning("Rejected completion signal with bad signature")
            raise

        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError as e:
            raise ValueError("Body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValueError("Body must be a JSON object")

        token = extract_token(payload)
        if not token:
            raise ValueError("Missing task_id")

        async with self.session_factory() as session:
            record = await find_pending(session, token)
            if record is None:
                logger.info(f"No pending task for token {token}; acknowledging")
                return Acknowledgement(False, False, "No matching task found", token)

            applied = await apply_completion(session, record, payload)

        if applied:
            await self.enqueue_finalize(record)
            return Acknowledgement(True, True, "Task updated", token)
        return Acknowledgement(True, False, "Task already settled or still running", token)
