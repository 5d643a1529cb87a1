"""Serialized background builds.

A :class:`BuildJobController` owns a priority-ordered queue of build
requests for one workspace root and a single worker thread that runs them
one at a time, so two builds never write the same index concurrently.
Failures caused by the network or by rate limiting are retried after a
backoff delay taken from the job's :class:`~memdex.index.retry.RetryPolicy`.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List

from memdex.config import EmbedConfig
from memdex.embedding.providers import validate_config
from memdex.errors import BuildCancelled, ConfigError
from memdex.index.builder import BuildResult, build_index, utc_now
from memdex.index.events import BuildProgress, CancelToken, latest
from memdex.index.retry import (
    RETRY_TEMPLATES,
    RetryPolicy,
    classify_error,
    cluster_key,
    is_retryable,
    normalize_error_message,
    resolve_retry_policy,
    template_name,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 50
STATUS_FAILURE_CLUSTERS = 10
MAX_RETRY_FAILED = 50

Builder = Callable[..., BuildResult]


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    CANCELING = "canceling"
    RETRY_WAIT = "retry_wait"
    OK = "ok"
    ERROR = "error"
    CANCELED = "canceled"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @classmethod
    def parse(cls, value: "str | int | JobPriority | None") -> "JobPriority":
        """Accept names or ranks; anything unrecognized is ``normal``."""
        if isinstance(value, JobPriority):
            return value
        text = "" if value is None else str(value).strip().lower()
        if text in ("high", "2"):
            return cls.HIGH
        if text in ("low", "0"):
            return cls.LOW
        return cls.NORMAL

    @property
    def rank(self) -> int:
        return {"low": 0, "normal": 1, "high": 2}[self.value]


@dataclass(slots=True, frozen=True)
class JobEvent:
    """Notification delivered to :meth:`BuildJobController.subscribe` queues."""

    type: str
    job_id: str
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Job:
    id: str
    params: EmbedConfig
    trigger: str = "api"
    reason: str = ""
    priority: JobPriority = JobPriority.NORMAL
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    source_job_id: str = ""
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    created_at: str = field(default_factory=utc_now)
    started_at: str | None = None
    finished_at: str | None = None
    retry_at: str | None = None
    progress: BuildProgress | None = None
    result_meta: Dict[str, Any] | None = None
    error: str | None = None
    error_class: str | None = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    channel: queue.SimpleQueue = field(default_factory=queue.SimpleQueue)
    timer: threading.Timer | None = None

    def snapshot(self) -> Dict[str, Any]:
        self.progress = latest(self.channel, self.progress)
        return {
            "id": self.id,
            "status": self.status.value,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "trigger": self.trigger,
            "reason": self.reason,
            "priority": self.priority.value,
            "attempts": self.attempts,
            "maxRetries": self.policy.max_retries,
            "retryDelayMs": self.policy.retry_delay_ms,
            "retryPolicy": self.policy.to_dict(),
            "sourceJobId": self.source_job_id or None,
            "retryAt": self.retry_at,
            "params": self.params.to_params(),
            "progress": self.progress.to_dict() if self.progress else None,
            "resultMeta": self.result_meta,
            "errorClass": self.error_class,
            "error": self.error,
        }


class BuildJobController:
    """Single-worker priority queue of index builds for one workspace root.

    The worker takes the head of ``_queued`` under the lock; ``_tasks`` only
    carries wake-up tokens, so run order always matches queue order.
    """

    def __init__(
        self,
        root: Path,
        *,
        max_history: int = DEFAULT_MAX_HISTORY,
        builder: Builder = build_index,
        retry_template: str = "balanced",
        default_priority: str = "normal",
    ) -> None:
        self.root = Path(root).resolve()
        self._builder = builder
        self._tasks: "queue.Queue[bool | None]" = queue.Queue()
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._queued: List[Job] = []
        self._waiting: Dict[str, Job] = {}
        self._active: Job | None = None
        self._history: Deque[Job] = deque(maxlen=max(1, max_history))
        self._subscribers: List[queue.Queue] = []
        self._seq = itertools.count(1)
        self._stats = {"queued": 0, "started": 0, "succeeded": 0, "failed": 0, "canceled": 0, "retried": 0}
        self._retry_template = template_name(retry_template)
        self._default_priority = JobPriority.parse(default_priority)
        self._worker: threading.Thread | None = None
        self._closed = False

    # -- public API -----------------------------------------------------

    def enqueue(
        self,
        config: EmbedConfig | None = None,
        *,
        trigger: str = "api",
        reason: str = "",
        priority: str | JobPriority | None = None,
        retry_template: str | None = None,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
        source_job_id: str = "",
        **policy_overrides: Any,
    ) -> Dict[str, Any]:
        """Queue a build and wake the worker. Returns the job snapshot.

        ``policy_overrides`` accepts the remaining :class:`RetryPolicy`
        fields (``strategy``, ``max_delay_ms``, ...).
        """
        config = config or EmbedConfig()
        validate_config(config)
        policy = resolve_retry_policy(
            retry_template,
            default=self._retry_template,
            max_retries=max_retries,
            retry_delay_ms=retry_delay_ms,
            **policy_overrides,
        )
        job = Job(
            id=f"ej_{int(time.time() * 1000)}_{next(self._seq)}",
            params=config,
            trigger=trigger,
            reason=reason,
            priority=JobPriority.parse(self._default_priority if priority in (None, "") else priority),
            policy=policy,
            source_job_id=str(source_job_id or ""),
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("job controller is closed")
            self._insert(job)
            self._stats["queued"] += 1
            snapshot = job.snapshot()
            self._emit(
                "queued",
                job,
                trigger=trigger,
                queueSize=len(self._queued),
                priority=job.priority.value,
                sourceJobId=job.source_job_id or None,
            )
            self._ensure_worker()
            self._tasks.put(True)
        LOGGER.info("Queued embed job %s (%s, %s)", job.id, trigger, job.priority.value)
        return snapshot

    def configure(self, *, retry_template: str | None = None, default_priority: str | None = None) -> Dict[str, Any]:
        """Change the defaults applied to jobs enqueued from now on."""
        with self._lock:
            if retry_template is not None:
                self._retry_template = template_name(retry_template)
            if default_priority is not None:
                self._default_priority = JobPriority.parse(default_priority)
            return self._config()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "generatedAt": utc_now(),
                "root": str(self.root),
                "config": self._config(),
                "retryTemplates": {name: policy.to_dict() for name, policy in RETRY_TEMPLATES.items()},
                "stats": dict(self._stats),
                "active": self._active.snapshot() if self._active else None,
                "queued": [job.snapshot() for job in self._queued],
                "retryWaiting": [job.snapshot() for job in self._waiting.values()],
                "history": [job.snapshot() for job in self._history],
                "failures": self.failure_clusters(limit=STATUS_FAILURE_CLUSTERS),
            }

    def get_job(self, job_id: str) -> Dict[str, Any] | None:
        """Look a job up in the active slot, the queue, retry wait, then history."""
        with self._lock:
            if self._active is not None and self._active.id == job_id:
                return self._active.snapshot()
            if job_id in self._waiting:
                return self._waiting[job_id].snapshot()
            for job in itertools.chain(self._queued, self._history):
                if job.id == job_id:
                    return job.snapshot()
        return None

    def cancel(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            active = self._active
            if active is not None and active.id == job_id:
                active.cancel_token.cancel()
                active.status = JobStatus.CANCELING
                LOGGER.info("Canceling running embed job %s", job_id)
                return {"ok": True, "id": job_id, "state": JobStatus.CANCELING.value}

            job = self._waiting.pop(job_id, None)
            if job is not None:
                self._stop_timer(job)
                job.error = "canceled while waiting to retry"
            else:
                job = next((j for j in self._queued if j.id == job_id), None)
                if job is not None:
                    self._queued.remove(job)
                    job.error = "canceled before start"
            if job is not None:
                job.cancel_token.cancel()
                job.error_class = "canceled"
                self._retire(job, JobStatus.CANCELED)
                self._emit("canceled", job, error=job.error)
        if job is None:
            return {"ok": False, "id": job_id, "error": "job_not_found"}
        LOGGER.info("Canceled embed job %s before it ran", job_id)
        return {"ok": True, "id": job_id, "state": JobStatus.CANCELED.value}

    def failure_clusters(self, *, limit: int = 20, error_class: str = "") -> List[Dict[str, Any]]:
        """Group failed jobs in history by class and normalized message."""
        wanted = str(error_class or "").strip().lower()
        clusters: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            failed = [job for job in self._history if job.status is JobStatus.ERROR]
        for job in failed:
            if wanted and (job.error_class or "").lower() != wanted:
                continue
            key = cluster_key(job.error_class, job.error)
            at = job.finished_at or job.started_at or job.created_at
            cluster = clusters.get(key)
            if cluster is None:
                clusters[key] = {
                    "key": key,
                    "errorClass": job.error_class or "unknown",
                    "signature": normalize_error_message(job.error or "") or "<empty>",
                    "count": 1,
                    "lastAt": at,
                    "sampleError": job.error or "",
                    "sampleJobId": job.id,
                }
                continue
            cluster["count"] += 1
            if at and at > (cluster["lastAt"] or ""):
                cluster.update(lastAt=at, sampleError=job.error or cluster["sampleError"], sampleJobId=job.id)
        ordered = sorted(clusters.values(), key=lambda c: c["lastAt"] or "", reverse=True)
        ordered.sort(key=lambda c: c["count"], reverse=True)
        return ordered[: max(1, int(limit or 20))]

    def retry_job(
        self,
        job_id: str,
        *,
        priority: str | None = None,
        retry_template: str | None = None,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
    ) -> Dict[str, Any]:
        """Queue a fresh copy of a failed or canceled job from history."""
        with self._lock:
            source = next((job for job in self._history if job.id == job_id), None)
        if source is None:
            return {"ok": False, "id": job_id, "error": "job_not_found"}
        if source.status not in (JobStatus.ERROR, JobStatus.CANCELED):
            return {"ok": False, "id": job_id, "error": "job_not_retryable_status"}

        policy = source.policy
        job = self.enqueue(
            source.params,
            trigger="retry",
            reason=f"retry:{source.id}",
            source_job_id=source.id,
            priority=priority or source.priority,
            retry_template=retry_template or policy.template,
            max_retries=policy.max_retries if max_retries is None else max_retries,
            retry_delay_ms=policy.retry_delay_ms if retry_delay_ms is None else retry_delay_ms,
            strategy=None if retry_template else policy.strategy,
            max_delay_ms=None if retry_template else policy.max_delay_ms,
            backoff_multiplier=None if retry_template else policy.backoff_multiplier,
            jitter_ratio=None if retry_template else policy.jitter_ratio,
        )
        LOGGER.info("Requeued embed job %s as %s", source.id, job["id"])
        self._emit("requeued", source, jobId=job["id"])
        return {"ok": True, "sourceJobId": source.id, "job": job}

    def retry_failed(
        self,
        *,
        limit: int = 5,
        error_class: str = "",
        cluster: str = "",
        priority: str | None = None,
        retry_template: str | None = None,
    ) -> Dict[str, Any]:
        """Retry up to ``limit`` failed jobs, newest first, optionally filtered."""
        cap = max(1, min(MAX_RETRY_FAILED, int(limit or 5)))
        wanted_class = str(error_class or "").strip().lower()
        wanted_cluster = str(cluster or "").strip()
        if retry_template:
            template_name(retry_template)
        with self._lock:
            history = list(self._history)

        picked: List[Job] = []
        for job in history:
            if len(picked) >= cap:
                break
            if job.status is not JobStatus.ERROR:
                continue
            if wanted_class and (job.error_class or "").lower() != wanted_class:
                continue
            if wanted_cluster and cluster_key(job.error_class, job.error) != wanted_cluster:
                continue
            picked.append(job)

        retried: List[Dict[str, str]] = []
        for job in picked:
            try:
                outcome = self.retry_job(job.id, priority=priority, retry_template=retry_template)
            except ConfigError as exc:
                LOGGER.warning("Cannot retry embed job %s: %s", job.id, exc)
                continue
            if outcome["ok"]:
                retried.append({"sourceJobId": job.id, "jobId": outcome["job"]["id"]})
        LOGGER.info("Retried %d of %d failed embed jobs", len(retried), len(picked))
        return {
            "ok": True,
            "retried": retried,
            "requestedLimit": cap,
            "matched": len(picked),
            "errorClass": wanted_class or None,
            "clusterKey": wanted_cluster or None,
        }

    def subscribe(self) -> "queue.Queue[JobEvent]":
        """Return a queue receiving every subsequent :class:`JobEvent`."""
        channel: "queue.Queue[JobEvent]" = queue.Queue()
        with self._lock:
            self._subscribers.append(channel)
        return channel

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued, running or waiting to retry. False on timeout."""
        with self._changed:
            return self._changed.wait_for(
                lambda: self._active is None and not self._queued and not self._waiting, timeout
            )

    def close(self, timeout: float | None = None) -> None:
        """Stop accepting jobs; the worker exits after the queued ones.

        Jobs waiting to retry are canceled.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
            for job in list(self._waiting.values()):
                self._waiting.pop(job.id)
                self._stop_timer(job)
                job.error = "controller closed before retry"
                job.error_class = "canceled"
                self._retire(job, JobStatus.CANCELED)
            self._tasks.put(None)
        if worker is not None:
            worker.join(timeout)

    # -- worker ---------------------------------------------------------

    def _config(self) -> Dict[str, Any]:
        return {
            "maxConcurrent": 1,
            "retryTemplate": self._retry_template,
            "defaultPriority": self._default_priority.value,
        }

    def _insert(self, job: Job) -> None:
        """Place ``job`` ahead of the first queued job with a lower priority. Caller holds the lock."""
        position = next(
            (i for i, queued in enumerate(self._queued) if queued.priority.rank < job.priority.rank),
            len(self._queued),
        )
        self._queued.insert(position, job)

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name=f"memdex-embed-{self.root.name}", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            if self._tasks.get() is None:
                return
            with self._lock:
                if not self._queued:
                    # The job this token announced was canceled.
                    continue
                job = self._queued.pop(0)
                self._active = job
                job.status = JobStatus.RUNNING
                job.started_at = utc_now()
                job.retry_at = None
                job.attempts += 1
                self._stats["started"] += 1
            LOGGER.info("Starting embed job %s (attempt %d)", job.id, job.attempts)
            self._emit("start", job, trigger=job.trigger, attempts=job.attempts, priority=job.priority.value)
            self._execute(job)

    def _execute(self, job: Job) -> None:
        try:
            result = self._builder(self.root, job.params, cancel=job.cancel_token, progress=job.channel)
        except Exception as exc:
            job.error = str(exc) or exc.__class__.__name__
            job.error_class = "canceled" if job.cancel_token.cancelled else classify_error(exc)
            if isinstance(exc, BuildCancelled) or job.cancel_token.cancelled:
                status = JobStatus.CANCELED
            elif is_retryable(job.error_class) and job.attempts <= job.policy.max_retries:
                self._schedule_retry(job)
                return
            else:
                LOGGER.error("Embed job %s failed (%s): %s", job.id, job.error_class, exc)
                status = JobStatus.ERROR
        else:
            job.result_meta = result.meta.to_dict()
            job.error = job.error_class = None
            status = JobStatus.OK

        with self._lock:
            self._active = None
            self._retire(job, status)
        LOGGER.info("Embed job %s finished: %s", job.id, status.value)
        self._emit(status.value, job, error=job.error, errorClass=job.error_class)

    def _schedule_retry(self, job: Job) -> None:
        delay_ms = job.policy.delay_ms(job.attempts)
        with self._lock:
            self._active = None
            job.status = JobStatus.RETRY_WAIT
            job.finished_at = utc_now()
            job.retry_at = (datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)).isoformat()
            self._stats["retried"] += 1
            self._waiting[job.id] = job
            self._emit(
                "retry",
                job,
                error=job.error,
                errorClass=job.error_class,
                attempts=job.attempts,
                maxRetries=job.policy.max_retries,
                retryDelayMs=delay_ms,
                retryAt=job.retry_at,
            )
            job.timer = threading.Timer(delay_ms / 1000.0, self._requeue, args=(job,))
            job.timer.daemon = True
            job.timer.start()
            self._changed.notify_all()
        LOGGER.warning(
            "Embed job %s failed (%s), retry %d/%d in %d ms: %s",
            job.id,
            job.error_class,
            job.attempts,
            job.policy.max_retries,
            delay_ms,
            job.error,
        )

    def _requeue(self, job: Job) -> None:
        with self._lock:
            if self._waiting.pop(job.id, None) is None:
                return
            job.timer = None
            if self._closed:
                job.error = "controller closed before retry"
                job.error_class = "canceled"
                self._retire(job, JobStatus.CANCELED)
                return
            job.status = JobStatus.QUEUED
            job.started_at = job.finished_at = None
            self._insert(job)
            self._emit("queued", job, trigger=job.trigger, queueSize=len(self._queued), priority=job.priority.value)
            self._ensure_worker()
            self._tasks.put(True)

    @staticmethod
    def _stop_timer(job: Job) -> None:
        if job.timer is not None:
            job.timer.cancel()
            job.timer = None

    def _retire(self, job: Job, status: JobStatus) -> None:
        """Move a job to history. Caller holds the lock."""
        job.progress = latest(job.channel, job.progress)
        job.status = status
        job.finished_at = utc_now()
        job.retry_at = None
        self._history.appendleft(job)
        key = {JobStatus.OK: "succeeded", JobStatus.ERROR: "failed", JobStatus.CANCELED: "canceled"}[status]
        self._stats[key] += 1
        self._changed.notify_all()

    def _emit(self, event_type: str, job: Job, **detail: Any) -> None:
        event = JobEvent(type=event_type, job_id=job.id, detail=detail)
        with self._lock:
            subscribers = list(self._subscribers)
        for channel in subscribers:
            channel.put(event)


_CONTROLLERS: Dict[Path, BuildJobController] = {}
_CONTROLLERS_LOCK = threading.Lock()


def get_controller(root: Path) -> BuildJobController:
    """Shared controller for ``root`` so every caller goes through one queue."""
    key = Path(root).resolve()
    with _CONTROLLERS_LOCK:
        controller = _CONTROLLERS.get(key)
        if controller is None:
            controller = BuildJobController(key)
            _CONTROLLERS[key] = controller
        return controller
