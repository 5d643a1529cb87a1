"""Tests for the serialized build job controller."""

from __future__ import annotations

import queue
import threading
import time
from pathlib import Path

import httpx
import pytest

from memdex.config import EmbedConfig
from memdex.errors import ConfigError, ProviderError
from memdex.index.builder import build_index
from memdex.index.events import BuildProgress, CancelToken, publish
from memdex.index.jobs import BuildJobController, JobPriority, JobStatus, get_controller

TIMEOUT = 10.0


class GatedBuilder:
    """Fake builder that blocks until released and records concurrency."""

    def __init__(self, fail: Exception | None = None) -> None:
        self.release = threading.Event()
        self.started = threading.Event()
        self.fail = fail
        self.calls: list[EmbedConfig] = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def __call__(self, root, config, *, cancel: CancelToken, progress: queue.SimpleQueue):
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.calls.append(config)
        try:
            publish(progress, BuildProgress("embed", 1, 2))
            self.started.set()
            while not self.release.wait(0.01):
                cancel.raise_if_cancelled()
            cancel.raise_if_cancelled()
            if self.fail is not None:
                raise self.fail
            return build_index(root, config)
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def gated() -> GatedBuilder:
    return GatedBuilder()


@pytest.fixture
def controller(workspace: Path, gated: GatedBuilder):
    ctl = BuildJobController(workspace, builder=gated)
    yield ctl
    gated.release.set()
    ctl.close(TIMEOUT)


class TestBuildJobController:
    """Test queueing, serialization and cancellation."""

    def test_job_runs_to_completion(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        job = controller.enqueue(EmbedConfig(dim=32), trigger="test", reason="unit")
        assert job["status"] == "queued"
        assert job["id"].startswith("ej_")
        assert job["params"]["dim"] == 32

        gated.release.set()
        assert controller.wait_idle(TIMEOUT)

        finished = controller.get_job(job["id"])
        assert finished["status"] == "ok"
        assert finished["resultMeta"]["itemCount"] == 4
        assert finished["trigger"] == "test"
        assert finished["reason"] == "unit"
        assert finished["finishedAt"] is not None
        assert controller.status()["stats"]["succeeded"] == 1

    def test_jobs_run_one_at_a_time_in_order(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        first = controller.enqueue(EmbedConfig(dim=16))
        second = controller.enqueue(EmbedConfig(dim=24))
        assert gated.started.wait(TIMEOUT)

        status = controller.status()
        assert status["active"]["id"] == first["id"]
        assert [job["id"] for job in status["queued"]] == [second["id"]]

        gated.release.set()
        assert controller.wait_idle(TIMEOUT)

        assert gated.max_running == 1
        assert [config.dim for config in gated.calls] == [16, 24]
        history = controller.status()["history"]
        assert [job["id"] for job in history] == [second["id"], first["id"]]

    def test_progress_visible_while_running(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        job = controller.enqueue(EmbedConfig(dim=16))
        assert gated.started.wait(TIMEOUT)

        active = controller.get_job(job["id"])

        assert active["status"] == "running"
        assert active["progress"] == {"phase": "embed", "done": 1, "total": 2, "file": ""}

    def test_cancel_queued_job(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        controller.enqueue(EmbedConfig(dim=16))
        queued = controller.enqueue(EmbedConfig(dim=24))
        assert gated.started.wait(TIMEOUT)

        result = controller.cancel(queued["id"])

        assert result == {"ok": True, "id": queued["id"], "state": "canceled"}
        assert controller.get_job(queued["id"])["status"] == "canceled"
        gated.release.set()
        assert controller.wait_idle(TIMEOUT)
        assert [config.dim for config in gated.calls] == [16]

    def test_cancel_running_job(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        job = controller.enqueue(EmbedConfig(dim=16))
        assert gated.started.wait(TIMEOUT)

        result = controller.cancel(job["id"])
        assert result["state"] == "canceling"
        assert controller.wait_idle(TIMEOUT)

        finished = controller.get_job(job["id"])
        assert finished["status"] == "canceled"
        assert finished["resultMeta"] is None
        assert controller.status()["stats"]["canceled"] == 1

    def test_cancel_unknown_job(self, controller: BuildJobController) -> None:
        assert controller.cancel("ej_0_0") == {"ok": False, "id": "ej_0_0", "error": "job_not_found"}
        assert controller.get_job("ej_0_0") is None

    def test_failed_job_recorded(self, workspace: Path) -> None:
        gated = GatedBuilder(fail=ProviderError("quota exceeded"))
        gated.release.set()
        controller = BuildJobController(workspace, builder=gated)
        try:
            job = controller.enqueue(EmbedConfig(dim=16))
            assert controller.wait_idle(TIMEOUT)
            finished = controller.get_job(job["id"])
        finally:
            controller.close(TIMEOUT)

        assert finished["status"] == "error"
        assert finished["error"] == "quota exceeded"

    def test_history_capped(self, workspace: Path) -> None:
        gated = GatedBuilder()
        gated.release.set()
        controller = BuildJobController(workspace, max_history=2, builder=gated)
        try:
            ids = [controller.enqueue(EmbedConfig(dim=16))["id"] for _ in range(3)]
            assert controller.wait_idle(TIMEOUT)
            history = controller.status()["history"]
        finally:
            controller.close(TIMEOUT)

        assert [job["id"] for job in history] == [ids[2], ids[1]]
        assert controller.get_job(ids[0]) is None

    def test_invalid_config_rejected_synchronously(
        self, controller: BuildJobController, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigError):
            controller.enqueue(EmbedConfig(provider="openai"))
        assert controller.status()["queued"] == []

    def test_events_published(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        events = controller.subscribe()
        job = controller.enqueue(EmbedConfig(dim=16))
        gated.release.set()
        assert controller.wait_idle(TIMEOUT)

        seen = [events.get(timeout=TIMEOUT) for _ in range(3)]

        assert [event.type for event in seen] == ["queued", "start", "ok"]
        assert {event.job_id for event in seen} == {job["id"]}

    def test_closed_controller_rejects_jobs(self, controller: BuildJobController) -> None:
        controller.close(TIMEOUT)
        with pytest.raises(RuntimeError):
            controller.enqueue(EmbedConfig())

    def test_job_status_values(self) -> None:
        assert {status.value for status in JobStatus} == {
            "queued",
            "running",
            "canceling",
            "retry_wait",
            "ok",
            "error",
            "canceled",
        }


def test_get_controller_shared_per_root(tmp_path: Path) -> None:
    assert get_controller(tmp_path) is get_controller(tmp_path / ".")
    assert get_controller(tmp_path) is not get_controller(tmp_path / "other")


class ScriptedBuilder:
    """Fake builder that raises the scripted failures in turn, then builds."""

    def __init__(self, *failures: Exception) -> None:
        self.failures = list(failures)
        self.calls = 0

    def __call__(self, root, config, *, cancel: CancelToken, progress: queue.SimpleQueue):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return build_index(root, config)


def _network_failure() -> ProviderError:
    exc = ProviderError("OpenAI embeddings request failed: connection refused")
    exc.__cause__ = httpx.ConnectError("connection refused")
    return exc


def _rate_limited() -> ProviderError:
    return ProviderError("OpenAI embeddings failed: 429 Too Many Requests", status_code=429)


NO_DELAY = {"retry_template": "conservative", "retry_delay_ms": 0}


@pytest.fixture
def scripted_controller(workspace: Path):
    controllers: list[BuildJobController] = []

    def make(*failures: Exception) -> BuildJobController:
        controller = BuildJobController(workspace, builder=ScriptedBuilder(*failures))
        controllers.append(controller)
        return controller

    yield make
    for controller in controllers:
        controller.close(TIMEOUT)


class TestConcurrentEnqueue:
    """Test that run order follows queue order under concurrent callers."""

    def test_run_order_matches_enqueue_order(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        first_emit = threading.Event()
        emit = controller._emit

        def slow_emit(event_type, job, **detail):
            if event_type == "queued" and not first_emit.is_set():
                first_emit.set()
                time.sleep(0.2)
            emit(event_type, job, **detail)

        controller._emit = slow_emit
        ids: dict[int, str] = {}

        def submit(dim: int) -> None:
            ids[dim] = controller.enqueue(EmbedConfig(dim=dim))["id"]

        thread_a = threading.Thread(target=submit, args=(16,))
        thread_a.start()
        assert first_emit.wait(TIMEOUT)
        thread_b = threading.Thread(target=submit, args=(24,))
        thread_b.start()
        thread_a.join(TIMEOUT)
        thread_b.join(TIMEOUT)

        gated.release.set()
        assert controller.wait_idle(TIMEOUT)

        assert [config.dim for config in gated.calls] == [16, 24]
        history = controller.status()["history"]
        assert [job["id"] for job in history] == [ids[24], ids[16]]

    def test_many_threads_each_job_runs_once(self, workspace: Path) -> None:
        builder = ScriptedBuilder()
        controller = BuildJobController(workspace, builder=builder)
        try:
            threads = [
                threading.Thread(target=controller.enqueue, args=(EmbedConfig(dim=16),)) for _ in range(8)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(TIMEOUT)
            assert controller.wait_idle(TIMEOUT)
            status = controller.status()
        finally:
            controller.close(TIMEOUT)

        assert builder.calls == 8
        assert status["stats"]["succeeded"] == 8
        assert len({job["id"] for job in status["history"]}) == 8


class TestPriority:
    """Test priority ordered insertion."""

    def test_higher_priority_jumps_ahead(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        controller.enqueue(EmbedConfig(dim=8))
        assert gated.started.wait(TIMEOUT)
        low = controller.enqueue(EmbedConfig(dim=16), priority="low")
        normal = controller.enqueue(EmbedConfig(dim=24))
        high = controller.enqueue(EmbedConfig(dim=32), priority="high")
        second_high = controller.enqueue(EmbedConfig(dim=40), priority="2")

        queued = controller.status()["queued"]

        assert [job["id"] for job in queued] == [high["id"], second_high["id"], normal["id"], low["id"]]
        assert [job["priority"] for job in queued] == ["high", "high", "normal", "low"]
        gated.release.set()
        assert controller.wait_idle(TIMEOUT)
        assert [config.dim for config in gated.calls] == [8, 32, 40, 24, 16]

    def test_priority_parsing(self) -> None:
        assert JobPriority.parse("HIGH") is JobPriority.HIGH
        assert JobPriority.parse(0) is JobPriority.LOW
        assert JobPriority.parse("whatever") is JobPriority.NORMAL
        assert JobPriority.parse(None) is JobPriority.NORMAL

    def test_default_priority_configurable(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        config = controller.configure(default_priority="low", retry_template="aggressive")

        job = controller.enqueue(EmbedConfig(dim=8))

        assert config == {"maxConcurrent": 1, "retryTemplate": "aggressive", "defaultPriority": "low"}
        assert job["priority"] == "low"
        assert job["retryPolicy"]["template"] == "aggressive"
        assert job["maxRetries"] == 4

    def test_unknown_retry_template_rejected(self, controller: BuildJobController) -> None:
        with pytest.raises(ConfigError):
            controller.enqueue(EmbedConfig(), retry_template="reckless")
        with pytest.raises(ConfigError):
            controller.configure(retry_template="reckless")


class TestAutomaticRetry:
    """Test job-level retries of transient failures."""

    def test_network_failure_retried_then_succeeds(self, scripted_controller) -> None:
        controller = scripted_controller(_network_failure())
        events = controller.subscribe()

        job = controller.enqueue(EmbedConfig(dim=16), max_retries=2, **NO_DELAY)
        assert controller.wait_idle(TIMEOUT)
        finished = controller.get_job(job["id"])

        assert finished["status"] == "ok"
        assert finished["attempts"] == 2
        assert finished["error"] is None
        assert finished["retryAt"] is None
        assert controller.status()["stats"]["retried"] == 1
        seen = [events.get(timeout=TIMEOUT).type for _ in range(6)]
        assert seen == ["queued", "start", "retry", "queued", "start", "ok"]

    def test_rate_limit_gives_up_after_max_retries(self, scripted_controller) -> None:
        controller = scripted_controller(_rate_limited(), _rate_limited(), _rate_limited())

        job = controller.enqueue(EmbedConfig(dim=16), max_retries=2, **NO_DELAY)
        assert controller.wait_idle(TIMEOUT)
        finished = controller.get_job(job["id"])
        stats = controller.status()["stats"]

        assert finished["status"] == "error"
        assert finished["errorClass"] == "rate_limit"
        assert finished["attempts"] == 3
        assert stats["retried"] == 2
        assert stats["failed"] == 1

    @pytest.mark.parametrize(
        "failure, error_class",
        [
            (ProviderError("OpenAI embeddings failed: 401 Unauthorized", status_code=401), "auth"),
            (ConfigError("Missing OPENAI_API_KEY"), "config"),
            (RuntimeError("index exploded"), "runtime"),
        ],
    )
    def test_permanent_failures_not_retried(self, scripted_controller, failure, error_class) -> None:
        controller = scripted_controller(failure)

        job = controller.enqueue(EmbedConfig(dim=16), max_retries=3, **NO_DELAY)
        assert controller.wait_idle(TIMEOUT)
        finished = controller.get_job(job["id"])

        assert finished["status"] == "error"
        assert finished["errorClass"] == error_class
        assert finished["attempts"] == 1
        assert controller.status()["stats"]["retried"] == 0

    def test_retry_wait_visible_and_cancelable(self, scripted_controller) -> None:
        controller = scripted_controller(_network_failure())
        events = controller.subscribe()

        job = controller.enqueue(EmbedConfig(dim=16), retry_template="conservative", retry_delay_ms=60_000)
        while events.get(timeout=TIMEOUT).type != "retry":
            pass
        waiting = controller.get_job(job["id"])

        assert waiting["status"] == "retry_wait"
        assert waiting["retryAt"] is not None
        assert [j["id"] for j in controller.status()["retryWaiting"]] == [job["id"]]
        assert not controller.wait_idle(0.05)

        assert controller.cancel(job["id"]) == {"ok": True, "id": job["id"], "state": "canceled"}
        assert controller.wait_idle(TIMEOUT)
        assert controller.get_job(job["id"])["status"] == "canceled"

    def test_close_cancels_waiting_retry(self, scripted_controller) -> None:
        controller = scripted_controller(_network_failure())
        events = controller.subscribe()
        job = controller.enqueue(EmbedConfig(dim=16), retry_template="conservative", retry_delay_ms=60_000)
        while events.get(timeout=TIMEOUT).type != "retry":
            pass

        controller.close(TIMEOUT)

        closed = controller.get_job(job["id"])
        assert closed["status"] == "canceled"
        assert closed["error"] == "controller closed before retry"


class TestManualRetry:
    """Test retry_job, retry_failed and failure clusters."""

    def _fail(self, controller: BuildJobController, count: int = 1) -> list[str]:
        ids = [controller.enqueue(EmbedConfig(dim=16), max_retries=0)["id"] for _ in range(count)]
        assert controller.wait_idle(TIMEOUT)
        return ids

    def test_retry_job(self, scripted_controller) -> None:
        controller = scripted_controller(RuntimeError("disk full"))
        events = controller.subscribe()
        [failed] = self._fail(controller)

        outcome = controller.retry_job(failed, priority="high")
        assert controller.wait_idle(TIMEOUT)

        assert outcome["ok"] is True
        assert outcome["sourceJobId"] == failed
        retried = controller.get_job(outcome["job"]["id"])
        assert retried["status"] == "ok"
        assert retried["trigger"] == "retry"
        assert retried["reason"] == f"retry:{failed}"
        assert retried["sourceJobId"] == failed
        assert retried["priority"] == "high"
        seen = []
        while not events.empty():
            seen.append(events.get_nowait())
        assert any(event.type == "requeued" and event.detail["jobId"] == retried["id"] for event in seen)

    def test_retry_job_rejections(self, scripted_controller) -> None:
        controller = scripted_controller()
        [succeeded] = self._fail(controller)

        assert controller.retry_job("ej_0_0") == {"ok": False, "id": "ej_0_0", "error": "job_not_found"}
        assert controller.retry_job(succeeded) == {
            "ok": False,
            "id": succeeded,
            "error": "job_not_retryable_status",
        }

    def test_retry_canceled_job(self, controller: BuildJobController, gated: GatedBuilder) -> None:
        controller.enqueue(EmbedConfig(dim=16))
        queued = controller.enqueue(EmbedConfig(dim=24))
        assert gated.started.wait(TIMEOUT)
        controller.cancel(queued["id"])

        outcome = controller.retry_job(queued["id"])
        gated.release.set()
        assert controller.wait_idle(TIMEOUT)

        assert outcome["ok"] is True
        assert [config.dim for config in gated.calls] == [16, 24]

    def test_failure_clusters(self, scripted_controller) -> None:
        controller = scripted_controller(
            RuntimeError("chunk 12 of 'rules.md' failed"),
            RuntimeError("chunk 40 of 'todos.md' failed"),
            ProviderError("OpenAI embeddings failed: 401 Unauthorized", status_code=401),
        )
        self._fail(controller, 3)

        clusters = controller.failure_clusters()

        assert [(c["errorClass"], c["count"]) for c in clusters] == [("runtime", 2), ("auth", 1)]
        assert clusters[0]["key"] == "runtime:chunk <n> of <quoted> failed"
        assert clusters[0]["sampleError"] == "chunk 40 of 'todos.md' failed"
        assert [c["errorClass"] for c in controller.failure_clusters(error_class="auth")] == ["auth"]
        assert controller.status()["failures"] == clusters

    def test_retry_failed_filters(self, scripted_controller) -> None:
        controller = scripted_controller(
            RuntimeError("chunk 12 of 'rules.md' failed"),
            ProviderError("OpenAI embeddings failed: 401 Unauthorized", status_code=401),
            RuntimeError("chunk 40 of 'todos.md' failed"),
        )
        first, auth, last = self._fail(controller, 3)

        by_class = controller.retry_failed(error_class="AUTH")
        assert controller.wait_idle(TIMEOUT)
        by_cluster = controller.retry_failed(cluster="runtime:chunk <n> of <quoted> failed", limit=1)
        assert controller.wait_idle(TIMEOUT)

        assert by_class["matched"] == 1
        assert [r["sourceJobId"] for r in by_class["retried"]] == [auth]
        assert by_class["errorClass"] == "auth"
        assert by_cluster["requestedLimit"] == 1
        assert [r["sourceJobId"] for r in by_cluster["retried"]] == [last]
        assert by_cluster["clusterKey"] == "runtime:chunk <n> of <quoted> failed"

    def test_retry_failed_limit_clamped(self, scripted_controller) -> None:
        controller = scripted_controller()
        assert controller.retry_failed(limit=500)["requestedLimit"] == 50
        assert controller.retry_failed(limit=0)["requestedLimit"] == 5
