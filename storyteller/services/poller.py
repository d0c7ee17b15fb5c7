from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import httpx

from storyteller.utils.logging import get_logger


logger = get_logger('poller')

DEFAULT_MAX_ATTEMPTS = 90
DEFAULT_INTERVAL_MS = 2000
SUCCEEDED_WITHOUT_ARTIFACT = 'succeeded without artifact'


class TransientFetchError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TaskStatus(str, Enum):
    PENDING = 'Pending'
    RUNNING = 'Running'
    SUCCEEDED = 'Succeeded'
    FAILED = 'Failed'
    CANCELED = 'Canceled'
    UNKNOWN = 'Unknown'

    @classmethod
    def parse(cls, raw: Any) -> 'TaskStatus':
        value = str(raw or '').strip().lower()
        return _STATUS_ALIASES.get(value, cls.UNKNOWN)

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELED)


_STATUS_ALIASES: Dict[str, TaskStatus] = {
    'pending': TaskStatus.PENDING,
    'queued': TaskStatus.PENDING,
    'waiting': TaskStatus.PENDING,
    'running': TaskStatus.RUNNING,
    'processing': TaskStatus.RUNNING,
    'succeeded': TaskStatus.SUCCEEDED,
    'success': TaskStatus.SUCCEEDED,
    'completed': TaskStatus.SUCCEEDED,
    'failed': TaskStatus.FAILED,
    'fail': TaskStatus.FAILED,
    'error': TaskStatus.FAILED,
    'canceled': TaskStatus.CANCELED,
    'cancelled': TaskStatus.CANCELED,
}


@dataclass(frozen=True)
class TaskRecord:
    status: TaskStatus
    artifact_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'TaskRecord':
        url = data.get('artifact_url') or data.get('artifactUrl')
        url = str(url).strip() if url else None
        return cls(status=TaskStatus.parse(data.get('status')), artifact_url=url or None, raw=dict(data))


class OutcomeKind(str, Enum):
    READY = 'ready'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'


@dataclass(frozen=True)
class PollOutcome:
    kind: OutcomeKind
    artifact_url: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ready(cls, artifact_url: str) -> 'PollOutcome':
        return cls(OutcomeKind.READY, artifact_url=artifact_url)

    @classmethod
    def failed(cls, reason: str) -> 'PollOutcome':
        return cls(OutcomeKind.FAILED, reason=reason)

    @classmethod
    def timed_out(cls) -> 'PollOutcome':
        return cls(OutcomeKind.TIMED_OUT)

    @property
    def is_ready(self) -> bool:
        return self.kind is OutcomeKind.READY

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'kind': self.kind.value}
        if self.kind is OutcomeKind.READY:
            data['artifactUrl'] = self.artifact_url
        elif self.kind is OutcomeKind.FAILED:
            data['reason'] = self.reason
        return data


StatusFetcher = Callable[[str], Awaitable[Union[TaskRecord, Mapping[str, Any]]]]
Sleeper = Callable[[float], Awaitable[Any]]


async def poll_task(
    task_id: str,
    fetch_status: StatusFetcher,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    interval_ms: int = DEFAULT_INTERVAL_MS,
    sleep: Sleeper = asyncio.sleep,
) -> PollOutcome:
    """Poll ``fetch_status`` until the task reaches a terminal state.

    Waits ``interval_ms`` before every attempt, the first one included. A
    failed fetch still uses up its attempt. Returns exactly one outcome;
    cancelling the awaiting coroutine stops polling and raises
    ``asyncio.CancelledError`` instead.
    """
    if not task_id:
        raise ValueError('task_id must be a non-empty string')
    if max_attempts < 1:
        raise ValueError('max_attempts must be positive')
    if interval_ms < 1:
        raise ValueError('interval_ms must be positive')

    for attempt in range(1, max_attempts + 1):
        await sleep(interval_ms / 1000)

        try:
            result = await fetch_status(task_id)
        except (TransientFetchError, httpx.HTTPError) as exc:
            logger.info('poll_fetch_skipped', task_id=task_id, attempt=attempt, error=str(exc))
            continue

        record = result if isinstance(result, TaskRecord) else TaskRecord.from_mapping(result)
        if record.status is TaskStatus.SUCCEEDED:
            if record.artifact_url:
                logger.info('poll_outcome', task_id=task_id, attempt=attempt, kind='ready')
                return PollOutcome.ready(record.artifact_url)
            logger.warning('poll_outcome', task_id=task_id, attempt=attempt, kind='failed', reason=SUCCEEDED_WITHOUT_ARTIFACT)
            return PollOutcome.failed(SUCCEEDED_WITHOUT_ARTIFACT)
        if record.status in (TaskStatus.FAILED, TaskStatus.CANCELED):
            logger.warning('poll_outcome', task_id=task_id, attempt=attempt, kind='failed', reason=record.status.value)
            return PollOutcome.failed(record.status.value)

    logger.warning('poll_outcome', task_id=task_id, attempt=max_attempts, kind='timed_out')
    return PollOutcome.timed_out()


@dataclass
class _PollSession:
    task: 'asyncio.Task[PollOutcome]'
    subscribers: int = 0


class PollManager:
    """Keeps at most one poll loop per task id.

    Callers of :meth:`wait_for` with the same task id share one session. A
    session is dropped when it finishes, or cancelled once its last
    subscriber goes away before it finishes.
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.fetch_status = fetch_status
        self.max_attempts = max_attempts
        self.interval_ms = interval_ms
        self._sleep = sleep
        self._sessions: Dict[str, _PollSession] = {}

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def subscriber_count(self, task_id: str) -> int:
        session = self._sessions.get(task_id)
        return session.subscribers if session else 0

    def _start(self, task_id: str) -> _PollSession:
        task = asyncio.create_task(
            poll_task(
                task_id,
                self.fetch_status,
                max_attempts=self.max_attempts,
                interval_ms=self.interval_ms,
                sleep=self._sleep,
            )
        )
        session = _PollSession(task=task)
        self._sessions[task_id] = session
        task.add_done_callback(lambda _: self._forget(task_id, session))
        return session

    def _forget(self, task_id: str, session: _PollSession) -> None:
        if self._sessions.get(task_id) is session:
            del self._sessions[task_id]

    async def wait_for(self, task_id: str) -> PollOutcome:
        if not task_id:
            raise ValueError('task_id must be a non-empty string')
        session = self._sessions.get(task_id)
        if session is None:
            session = self._start(task_id)
        else:
            logger.debug('poll_session_joined', task_id=task_id, subscribers=session.subscribers + 1)
        session.subscribers += 1
        try:
            return await asyncio.shield(session.task)
        finally:
            session.subscribers -= 1
            if session.subscribers == 0 and not session.task.done():
                logger.info('poll_session_abandoned', task_id=task_id)
                session.task.cancel()
                self._forget(task_id, session)

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.task.cancel()
        for session in sessions:
            try:
                await session.task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning('poll_session_close_failed', error=str(exc))
