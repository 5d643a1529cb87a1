"""FastAPI application exposing search and serialized index builds."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, List

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from memdex.config import EmbedConfig
from memdex.errors import ConfigError, IndexNotFoundError, ProviderError
from memdex.index.jobs import get_controller
from memdex.index.search import search
from memdex.index.status import get_status

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="memdex", version="0.1.0")

JOB_OPTIONS = {"root", "trigger", "reason", "priority", "retry_template", "max_retries", "retry_delay_ms"}


class SearchPayload(BaseModel):
    q: str
    root: str | None = None
    k: int = 8
    min_score: float = Field(0.15, alias="minScore")

    model_config = {"populate_by_name": True}


class BuildPayload(BaseModel):
    root: str | None = None
    provider: str | None = None
    model: str | None = None
    dim: int | None = None
    kinds: List[str] | None = None
    recent_days: int | None = Field(None, alias="recentDays")
    max_chunks_per_file: int | None = Field(None, alias="maxChunksPerFile")
    max_chars_per_chunk: int | None = Field(None, alias="maxCharsPerChunk")
    overlap_chars: int | None = Field(None, alias="overlapChars")
    max_total_chunks: int | None = Field(None, alias="maxTotalChunks")
    force: bool = False
    trigger: str = "api"
    reason: str = ""
    priority: str | None = None
    retry_template: str | None = Field(None, alias="retryTemplate")
    max_retries: int | None = Field(None, alias="maxRetries")
    retry_delay_ms: int | None = Field(None, alias="retryDelayMs")

    model_config = {"populate_by_name": True}


class RetryPayload(BaseModel):
    root: str | None = None
    priority: str | None = None
    retry_template: str | None = Field(None, alias="retryTemplate")
    max_retries: int | None = Field(None, alias="maxRetries")
    retry_delay_ms: int | None = Field(None, alias="retryDelayMs")

    model_config = {"populate_by_name": True}


class RetryFailedPayload(BaseModel):
    root: str | None = None
    limit: int = 5
    error_class: str = Field("", alias="errorClass")
    cluster_key: str = Field("", alias="clusterKey")
    priority: str | None = None
    retry_template: str | None = Field(None, alias="retryTemplate")

    model_config = {"populate_by_name": True}


def _resolve_root(root: str | None) -> Path:
    return Path(root or os.environ.get("MEMDEX_ROOT") or Path.cwd()).expanduser().resolve()


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.post("/search")
def search_index(payload: SearchPayload) -> dict[str, Any]:
    query = payload.q.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")
    root = _resolve_root(payload.root)
    try:
        hits = search(root, query, k=payload.k, min_score=payload.min_score)
    except IndexNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"root": str(root), "q": query, "hits": [hit.to_dict() for hit in hits]}


@app.get("/status")
def index_status(root: str | None = None) -> dict[str, Any]:
    return get_status(_resolve_root(root))


@app.post("/jobs")
def enqueue_build(payload: BuildPayload) -> dict[str, Any]:
    root = _resolve_root(payload.root)
    overrides = payload.model_dump(exclude=JOB_OPTIONS, exclude_none=True)
    if "kinds" in overrides:
        overrides["kinds"] = tuple(overrides["kinds"])
    try:
        config = EmbedConfig().with_overrides(**overrides)
        job = get_controller(root).enqueue(
            config,
            trigger=payload.trigger,
            reason=payload.reason,
            priority=payload.priority,
            retry_template=payload.retry_template,
            max_retries=payload.max_retries,
            retry_delay_ms=payload.retry_delay_ms,
        )
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "job": job}


@app.get("/jobs")
def jobs_status(root: str | None = None) -> dict[str, Any]:
    return get_controller(_resolve_root(root)).status()


@app.get("/jobs/failures")
def job_failures(root: str | None = None, limit: int = 20, errorClass: str = "") -> dict[str, Any]:
    clusters = get_controller(_resolve_root(root)).failure_clusters(limit=limit, error_class=errorClass)
    return {"failures": clusters}


@app.post("/jobs/retry-failed")
def retry_failed_jobs(payload: RetryFailedPayload) -> dict[str, Any]:
    controller = get_controller(_resolve_root(payload.root))
    try:
        return controller.retry_failed(
            limit=payload.limit,
            error_class=payload.error_class,
            cluster=payload.cluster_key,
            priority=payload.priority,
            retry_template=payload.retry_template,
        )
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/jobs/{job_id}")
def get_job(job_id: str, root: str | None = None) -> dict[str, Any]:
    job = get_controller(_resolve_root(root)).get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"job": job}


@app.post("/jobs/{job_id}/retry")
def retry_job(job_id: str, payload: RetryPayload) -> dict[str, Any]:
    controller = get_controller(_resolve_root(payload.root))
    try:
        result = controller.retry_job(
            job_id,
            priority=payload.priority,
            retry_template=payload.retry_template,
            max_retries=payload.max_retries,
            retry_delay_ms=payload.retry_delay_ms,
        )
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not result["ok"]:
        status_code = 404 if result["error"] == "job_not_found" else 409
        raise HTTPException(status_code=status_code, detail=result["error"])
    return result


@app.delete("/jobs/{job_id}")
def cancel_job(job_id: str, root: str | None = None) -> dict[str, Any]:
    result = get_controller(_resolve_root(root)).cancel(job_id)
    if not result["ok"]:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return result
