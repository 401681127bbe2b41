"""FastAPI backend for the camp accommodation finder.

Searches run as background jobs polled through /status_json, or as an NDJSON
stream on /search/stream. The Gemini key is only ever used server side.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from camp_finder.config import Settings
from camp_finder.discovery_generative import GeminiClient, TextGenerator
from camp_finder.enrichment import fetch_more_info, find_website, search_more, verify_website
from camp_finder.errors import EnrichmentError, LocationNotFound, SearchCancelled
from camp_finder.export import write_csv
from camp_finder.geocoding import NominatimClient
from camp_finder.models import Accommodation, AccommodationType, Coordinate, SearchStage
from camp_finder.pipeline import AccommodationSearch
from camp_finder.throttle import RequestThrottle

# Restore request-level logging (including httpx request lines) in the app process.
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logging.getLogger("httpx").setLevel(logging.INFO)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

SETTINGS = Settings.from_env()
JOB_TTL_SECONDS = SETTINGS.job_ttl_seconds
CLEANUP_INTERVAL_SECONDS = 10 * 60
DEFAULT_RADIUS_KM = 10.0
JOB_SEMAPHORE = asyncio.Semaphore(SETTINGS.max_active_jobs)

_cleanup_task: asyncio.Task | None = None

app = FastAPI(title="Camp Finder")

# Simple in-memory store for job status.
JOBS: dict[str, dict[str, Any]] = {}


class SearchRequest(BaseModel):
    location: str = ""
    radius: float = DEFAULT_RADIUS_KM


class AccommodationRequest(BaseModel):
    accommodation: dict[str, Any]
    location: Optional[str] = None


class SearchMoreRequest(BaseModel):
    category: AccommodationType
    existing: list[dict[str, Any]] = Field(default_factory=list)
    location: str
    center: dict[str, float]
    radius: float = DEFAULT_RADIUS_KM


def _build_search() -> AccommodationSearch:
    return AccommodationSearch(SETTINGS)


def _build_llm() -> TextGenerator | None:
    if not SETTINGS.gemini_enabled:
        return None
    return GeminiClient(
        SETTINGS.gemini_api_key or "",
        model=SETTINGS.gemini_model,
        throttle=RequestThrottle(SETTINGS.gemini_min_interval),
    )


def _build_geocoder() -> NominatimClient:
    return NominatimClient(
        base_url=SETTINGS.nominatim_url,
        user_agent=SETTINGS.user_agent,
        throttle=RequestThrottle(SETTINGS.nominatim_min_interval),
        timeout=SETTINGS.http_timeout,
    )


def _expire_jobs(now: float | None = None) -> list[str]:
    now = time.time() if now is None else now
    expired = [
        job_id
        for job_id, info in list(JOBS.items())
        if now - float(info.get("created_at") or 0.0) > JOB_TTL_SECONDS
    ]
    for job_id in expired:
        JOBS.pop(job_id, None)
    return expired


async def _cleanup_loop() -> None:
    while True:
        expired = _expire_jobs()
        if expired:
            logger.info("Expired %d finished jobs", len(expired))
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)


@app.on_event("startup")
async def _on_startup() -> None:
    global _cleanup_task
    if _cleanup_task is None:
        _cleanup_task = asyncio.create_task(_cleanup_loop())


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    global _cleanup_task
    if _cleanup_task is not None:
        _cleanup_task.cancel()
        _cleanup_task = None


def _validation_error(**fields: str) -> JSONResponse:
    return JSONResponse({"error": "validation", **fields}, status_code=400)


def _gemini_unavailable() -> JSONResponse:
    return JSONResponse({"error": "gemini_not_configured"}, status_code=503)


def _parse_accommodation(data: dict[str, Any]) -> Accommodation | None:
    try:
        return Accommodation.from_dict(data)
    except (KeyError, TypeError, ValueError):
        return None


async def _run_job(job_id: str, location: str, radius_km: float) -> None:
    async with JOB_SEMAPHORE:
        job = JOBS.get(job_id)
        if not job or job.get("status") == "cancelled":
            return
        job["status"] = "running"
        job["started_at"] = time.time()
        cancel_event: asyncio.Event = job["cancel_event"]

        search = _build_search()
        try:
            async for event in search.iter_search(location, radius_km, cancel_event=cancel_event):
                job["stage"] = event.stage.value
                job["logs"] = event.logs
                if event.query is not None:
                    job["queries"].append(event.query.to_dict())
                    continue
                job["items"] = event.results
                if event.final is not None:
                    job["result"] = event.final.to_dict()
        except LocationNotFound as exc:
            job["status"] = "error"
            job["stage"] = SearchStage.FAILED.value
            job["error"] = str(exc)
            return
        except SearchCancelled:
            job["status"] = "cancelled"
            job["stage"] = SearchStage.CANCELLED.value
            return
        except Exception as exc:
            logger.exception("Search job %s failed", job_id)
            job["status"] = "error"
            job["stage"] = SearchStage.FAILED.value
            job["error"] = f"Search failed: {exc}"
            return
        finally:
            await search.aclose()
            job["finished_at"] = time.time()

        job["status"] = "done"


@app.post("/search")
async def start_search(payload: SearchRequest, background: BackgroundTasks):
    location = payload.location.strip()
    if not location:
        return _validation_error(location="Please enter a location.")
    if payload.radius <= 0:
        return _validation_error(radius="The radius must be positive.")

    job_id = uuid.uuid4().hex[:10]
    JOBS[job_id] = {
        "status": "queued",
        "stage": SearchStage.IDLE.value,
        "location": location,
        "radius": payload.radius,
        "created_at": time.time(),
        "logs": [],
        "queries": [],
        "items": [],
        "result": None,
        "error": None,
        "cancel_event": asyncio.Event(),
    }
    background.add_task(_run_job, job_id, location, payload.radius)
    return {"job_id": job_id}


@app.get("/status_json/{job_id}")
def status_json(job_id: str):
    info = JOBS.get(job_id)
    if not info:
        return JSONResponse({"error": "unknown_job"}, status_code=404)
    payload = {
        "job_id": job_id,
        "status": info.get("status"),
        "stage": info.get("stage"),
        "location": info.get("location"),
        "radius": info.get("radius"),
        "results": [item.to_dict() for item in info.get("items") or []],
        "logs": list(info.get("logs") or []),
        "queries": list(info.get("queries") or []),
        "error": info.get("error"),
    }
    if info.get("status") == "done":
        payload["result"] = info.get("result")
    if info.get("status") in ("done", "cancelled") and info.get("items"):
        payload["download_url"] = f"/download/{job_id}"
    return payload


@app.post("/cancel/{job_id}")
async def cancel(job_id: str):
    info = JOBS.get(job_id)
    if not info:
        return JSONResponse({"ok": False, "error": "unknown_job"}, status_code=404)
    if info.get("status") in ("done", "error"):
        return {"ok": False, "status": info.get("status")}
    info["cancel_event"].set()
    if info.get("status") == "queued":
        info["status"] = "cancelled"
        info["stage"] = SearchStage.CANCELLED.value
    return {"ok": True}


@app.get("/download/{job_id}")
def download(job_id: str):
    info = JOBS.get(job_id)
    if not info or info.get("status") not in ("done", "cancelled"):
        return PlainTextResponse("Job not ready", status_code=404)

    buffer = io.StringIO()
    write_csv(buffer, info.get("items") or [])
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{job_id}.csv"'},
    )


async def _stream_search(request: Request, location: str, radius_km: float) -> AsyncIterator[str]:
    cancel_event = asyncio.Event()
    search = _build_search()
    events = search.iter_search(location, radius_km, cancel_event=cancel_event)
    try:
        async for event in events:
            if await request.is_disconnected():
                logger.info("Client left the stream for '%s'; cancelling", location)
                cancel_event.set()
                break
            yield json.dumps(event.to_dict(), ensure_ascii=False) + "\n"
    except LocationNotFound as exc:
        yield json.dumps({"stage": SearchStage.FAILED.value, "error": str(exc)}, ensure_ascii=False) + "\n"
    except SearchCancelled:
        yield json.dumps({"stage": SearchStage.CANCELLED.value}) + "\n"
    finally:
        await events.aclose()
        await search.aclose()


@app.get("/search/stream")
async def search_stream(request: Request, location: str = "", radius: float = DEFAULT_RADIUS_KM):
    location = location.strip()
    if not location:
        return _validation_error(location="Please enter a location.")
    if radius <= 0:
        return _validation_error(radius="The radius must be positive.")
    return StreamingResponse(
        _stream_search(request, location, radius),
        media_type="application/x-ndjson",
    )


@app.post("/more_info")
async def more_info(payload: AccommodationRequest):
    accommodation = _parse_accommodation(payload.accommodation)
    if accommodation is None:
        return _validation_error(accommodation="Invalid accommodation.")
    llm = _build_llm()
    if llm is None:
        return _gemini_unavailable()
    try:
        updated, info = await fetch_more_info(accommodation, llm=llm)
    except EnrichmentError as exc:
        return JSONResponse({"error": "enrichment_failed", "detail": str(exc)}, status_code=502)
    return {"accommodation": updated.to_dict(), "info": info.to_dict()}


@app.post("/find_website")
async def find_website_endpoint(payload: AccommodationRequest):
    accommodation = _parse_accommodation(payload.accommodation)
    if accommodation is None:
        return _validation_error(accommodation="Invalid accommodation.")
    llm = _build_llm()
    if llm is None:
        return _gemini_unavailable()
    try:
        website = await find_website(accommodation, llm=llm)
    except EnrichmentError as exc:
        return JSONResponse({"error": "enrichment_failed", "detail": str(exc)}, status_code=502)
    return {"website": website, "found": website is not None}


@app.post("/verify_website")
async def verify_website_endpoint(payload: AccommodationRequest):
    accommodation = _parse_accommodation(payload.accommodation)
    if accommodation is None:
        return _validation_error(accommodation="Invalid accommodation.")
    llm = _build_llm()
    if llm is None:
        return _gemini_unavailable()
    try:
        check = await verify_website(accommodation, llm=llm, location=payload.location)
    except EnrichmentError as exc:
        return JSONResponse({"error": "enrichment_failed", "detail": str(exc)}, status_code=502)
    return {"status": check.status, "website": check.website}


@app.post("/search_more")
async def search_more_endpoint(payload: SearchMoreRequest):
    existing = [_parse_accommodation(item) for item in payload.existing]
    if any(item is None for item in existing):
        return _validation_error(existing="Invalid accommodation in existing results.")
    try:
        center = Coordinate(lat=float(payload.center["lat"]), lon=float(payload.center["lon"]))
    except (KeyError, TypeError, ValueError):
        return _validation_error(center="Center needs lat and lon.")
    if payload.radius <= 0:
        return _validation_error(radius="The radius must be positive.")
    llm = _build_llm()
    if llm is None:
        return _gemini_unavailable()

    queries: list[dict[str, str]] = []
    async with _build_geocoder() as geocoder:
        results = await search_more(
            payload.category,
            [item for item in existing if item is not None],
            payload.location,
            center,
            payload.radius,
            llm=llm,
            geocoder=geocoder,
            on_query=lambda term, response: queries.append({"query": term, "response": response}),
            default_country=SETTINGS.default_country,
        )
    return {"results": [item.to_dict() for item in results], "queries": queries}


@app.get("/suggest")
async def suggest(q: str = ""):
    async with _build_geocoder() as geocoder:
        suggestions = await geocoder.suggest(q)
    return {"suggestions": suggestions}


@app.get("/healthz")
def healthz():
    return {"ok": True, "gemini": SETTINGS.gemini_enabled, "jobs": len(JOBS)}
