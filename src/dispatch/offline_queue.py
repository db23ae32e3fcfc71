"""
Durable queue of field actions for intermittently connected devices.

Every mutating action a driver takes is written to the local store first
and delivered later by `sync`, which hands each pending entry to a
caller-supplied handler. Delivery is at-least-once: an entry leaves the
queue only after its handler succeeds, and an entry that keeps failing is
marked failed for an operator instead of being dropped.

The queue knows nothing about the network. Handlers (supplied by the
backend-client layer) decide what delivering an action means.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from sqlalchemy import delete, func, select

from .db.database import SessionLocal
from .db.models import QueuedActionRecord
from .errors import ExhaustedRetriesError, SyncError
from .models import ActionCounts, ActionStatus, Coordinates, ProofOfService, QueuedAction, Status, SyncResult
from .retry import RetryPolicy
from .utils import to_millis, utcnow

logger = logging.getLogger(__name__)

UPDATE_STOP_STATUS = "UPDATE_STOP_STATUS"
UPDATE_LOCATION = "UPDATE_LOCATION"
COMPLETE_PICKUP = "COMPLETE_PICKUP"
UPLOAD_PROOF = "UPLOAD_PROOF"

DEFAULT_RETENTION_DAYS = 7
DEFAULT_SYNC_INTERVAL_MS = 30_000

Handler = Callable[[Any], Union[Awaitable[Any], Any]]


class OfflineActionQueue:
    """
    Device-local work list of pending field actions.

    Each call runs in its own session and commits per record, so enqueues
    from caller code can interleave with a sync pass. Only one sync pass
    runs at a time.

    Args:
        session_factory: Callable returning a SQLAlchemy session bound to the store.
        policy: Retry policy; its max_retries is stamped on new entries.
        clock: Returns the current time (tz-aware); injectable for tests.
    """

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._sync_lock: Optional[asyncio.Lock] = None
        self._sync_loop: Optional[asyncio.AbstractEventLoop] = None

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    def _lock(self) -> asyncio.Lock:
        # One lock per event loop; a queue may outlive several asyncio.run calls.
        loop = asyncio.get_running_loop()
        if self._sync_loop is not loop:
            self._sync_lock = asyncio.Lock()
            self._sync_loop = loop
        return self._sync_lock

    # --- Writes ---

    def enqueue(self, action_type: str, payload: Any = None, max_retries: Optional[int] = None) -> int:
        """
        Stores a new pending action and returns its local id. Never touches the network.

        Raises:
            ValueError: If action_type is empty or max_retries is below 1.
        """
        if not action_type:
            raise ValueError("action_type is required")
        if max_retries is None:
            max_retries = self.policy.max_retries
        elif max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        record = QueuedActionRecord(
            action_type=action_type,
            payload=payload,
            timestamp=self._now_ms(),
            status=ActionStatus.PENDING,
            retries=0,
            max_retries=max_retries,
        )
        with self._session_factory() as session:
            session.add(record)
            session.commit()
            action_id = record.id

        logger.debug("Queued action %s (%s)", action_id, action_type)
        return action_id

    def retry_failed(self, action_id: int) -> QueuedAction:
        """
        Re-arms a failed action after operator review: back to pending with its retry count reset.

        Raises:
            KeyError: If the action doesn't exist.
            ValueError: If the action is not in the failed state.
        """
        with self._session_factory() as session:
            record = session.get(QueuedActionRecord, action_id)
            if record is None:
                raise KeyError(f"Queued action {action_id} not found")
            if record.status != ActionStatus.FAILED:
                raise ValueError(f"Queued action {action_id} is {record.status.value}, not failed")
            record.status = ActionStatus.PENDING
            record.retries = 0
            record.completed_at = None
            session.commit()
            return QueuedAction.model_validate(record)

    def purge_expired(self, now: Optional[datetime] = None, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """
        Deletes completed and failed actions older than the retention period.

        Age counts from completed_at, or from the enqueue timestamp when
        completed_at is unset. Pending actions are never purged.

        Returns:
            Number of deleted actions.
        """
        now_ms = to_millis(now) if now is not None else self._now_ms()
        cutoff = now_ms - int(timedelta(days=retention_days).total_seconds() * 1000)

        with self._session_factory() as session:
            result = session.execute(
                delete(QueuedActionRecord)
                .where(QueuedActionRecord.status.in_([ActionStatus.COMPLETED, ActionStatus.FAILED]))
                .where(func.coalesce(QueuedActionRecord.completed_at, QueuedActionRecord.timestamp) < cutoff)
            )
            session.commit()
            purged = result.rowcount or 0

        if purged:
            logger.info("Purged %d expired queued actions", purged)
        return purged

    # --- Reads ---

    def get(self, action_id: int) -> Optional[QueuedAction]:
        with self._session_factory() as session:
            record = session.get(QueuedActionRecord, action_id)
            return QueuedAction.model_validate(record) if record else None

    def _list_by_status(self, status: ActionStatus) -> List[QueuedAction]:
        with self._session_factory() as session:
            records = session.execute(
                select(QueuedActionRecord)
                .where(QueuedActionRecord.status == status)
                .order_by(QueuedActionRecord.timestamp, QueuedActionRecord.id)
            ).scalars().all()
            return [QueuedAction.model_validate(record) for record in records]

    def list_pending(self) -> List[QueuedAction]:
        """Pending actions, oldest first."""
        return self._list_by_status(ActionStatus.PENDING)

    def list_failed(self) -> List[QueuedAction]:
        return self._list_by_status(ActionStatus.FAILED)

    def counts(self) -> ActionCounts:
        with self._session_factory() as session:
            rows = session.execute(
                select(QueuedActionRecord.status, func.count()).group_by(QueuedActionRecord.status)
            ).all()
        by_status = {status: count for status, count in rows}
        return ActionCounts(
            pending=by_status.get(ActionStatus.PENDING, 0),
            completed=by_status.get(ActionStatus.COMPLETED, 0),
            failed=by_status.get(ActionStatus.FAILED, 0),
            total=sum(by_status.values()),
        )

    # --- Synchronization ---

    async def sync(self, handlers: Mapping[str, Handler]) -> SyncResult:
        """
        Delivers every pending action once, oldest first.

        A successful handler call deletes the entry. A failure, including a
        missing handler, costs one retry; an entry that reaches max_retries
        becomes failed. A failing entry never stops the rest of the pass.
        Network errors and remote rejections are treated the same.

        Args:
            handlers: Maps action_type to a callable taking the payload.
                      Coroutine functions are awaited.

        Returns:
            SyncResult with counts and the SyncError / ExhaustedRetriesError per failure.
        """
        async with self._lock():
            result = SyncResult()
            for action in self.list_pending():
                try:
                    handler = handlers.get(action.action_type)
                    if handler is None:
                        raise LookupError(f"No handler for action: {action.action_type}")
                    outcome = handler(action.payload)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as exc:
                    self._record_failure(action, exc, result)
                    continue

                self._delete(action.id)
                result.synced += 1

        if result.synced or result.failed:
            logger.info("Sync pass: %d synced, %d failed, %d exhausted",
                        result.synced, result.failed, len(result.exhausted))
        return result

    def _delete(self, action_id: int) -> None:
        with self._session_factory() as session:
            session.execute(delete(QueuedActionRecord).where(QueuedActionRecord.id == action_id))
            session.commit()

    def _record_failure(self, action: QueuedAction, exc: Exception, result: SyncResult) -> None:
        with self._session_factory() as session:
            record = session.get(QueuedActionRecord, action.id)
            if record is None:
                return
            decision = self.policy.record_failure(record.retries, record.max_retries)
            record.retries = decision.retries
            if decision.exhausted:
                error = ExhaustedRetriesError(action.id, action.action_type, decision.retries, str(exc))
                record.status = ActionStatus.FAILED
                record.completed_at = self._now_ms()
                result.exhausted.append(action.id)
            else:
                error = SyncError(action.id, action.action_type, str(exc))
            record.error = error.message
            session.commit()

        result.failed += 1
        result.errors.append(error)
        logger.warning("%s (retry %d/%d)", error, decision.retries, action.max_retries)

    # --- Typed helpers for field actions ---

    def queue_stop_update(self, stop_id: str, status: Status, proof: Optional[ProofOfService] = None) -> int:
        return self.enqueue(UPDATE_STOP_STATUS, {
            "stop_id": stop_id,
            "status": status.value,
            "proof_of_service": proof.model_dump(mode="json") if proof else None,
        })

    def queue_location_update(
        self,
        driver_id: str,
        route_id: str,
        coordinates: Coordinates,
        recorded_at: Optional[datetime] = None,
    ) -> int:
        return self.enqueue(UPDATE_LOCATION, {
            "driver_id": driver_id,
            "route_id": route_id,
            "coordinates": coordinates.model_dump(mode="json"),
            "timestamp": (recorded_at or self._clock()).isoformat(),
        })

    def queue_pickup_completion(self, pickup_id: str, completion: Dict[str, Any]) -> int:
        return self.enqueue(COMPLETE_PICKUP, {"pickup_id": pickup_id, **completion})

    def queue_proof_upload(self, stop_id: str, file_type: str, file_data: str) -> int:
        """file_data is a base64 string or a local blob reference."""
        return self.enqueue(UPLOAD_PROOF, {"stop_id": stop_id, "file_type": file_type, "file_data": file_data})


class AutoSyncRunner:
    """
    Runs queue syncs on a timer while the device reports connectivity.

    Going offline stops the timer; a pass already running is left to finish
    (its handlers may fail and be retried next time). Coming back online
    fires a pass immediately. After a pass with failures the next pass is
    pushed out by the retry policy's backoff.

    set_online() must be called from within the running event loop.
    """

    def __init__(
        self,
        queue: OfflineActionQueue,
        handlers: Mapping[str, Handler],
        interval_ms: int = DEFAULT_SYNC_INTERVAL_MS,
        policy: Optional[RetryPolicy] = None,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.queue = queue
        self.handlers = handlers
        self.interval_ms = interval_ms
        self.policy = policy or queue.policy
        self.last_result: Optional[SyncResult] = None
        self.passes = 0
        self._online = False
        self._failed_passes = 0
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if self._wake is None:
            self._wake = asyncio.Event()

        if not online:
            logger.info("Connectivity lost; auto-sync suspended")
            self._wake.set()
            return

        logger.info("Connectivity available; auto-sync running")
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        else:
            self._wake.set()

    async def stop(self) -> None:
        """Suspends the timer and waits for any in-flight pass to finish."""
        self.set_online(False)
        if self._task is not None:
            await self._task
            self._task = None

    def next_delay_seconds(self, result: Optional[SyncResult]) -> float:
        interval = self.interval_ms / 1000
        if result is None or result.failed:
            self._failed_passes += 1
            return interval + self.policy.delay_for(self._failed_passes)
        self._failed_passes = 0
        return interval

    async def _run(self) -> None:
        while self._online:
            # Cleared before the pass so a reconnect during it is not lost.
            self._wake.clear()
            result = None
            try:
                result = await self.queue.sync(self.handlers)
                self.last_result = result
            except Exception:
                logger.exception("Auto-sync pass failed")
            self.passes += 1

            if not self._online:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.next_delay_seconds(result))
            except asyncio.TimeoutError:
                pass
