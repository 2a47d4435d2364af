#!/usr/bin/env python3
"""
Site Classifier API: FastAPI + Polars + Gemini
Upload a CSV of websites, classify each site's business type in rate-limited
batches, poll progress, and export the augmented spreadsheet.
"""

import asyncio
import argparse
import io
import logging
import time
import traceback
from typing import Optional
from uuid import uuid4

import polars as pl
from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

import batch_scheduler
import config
from classifier_client import GeminiSiteClassifier
from csv_io import DEFAULT_EXPORT_FILENAME, generate_csv, guess_url_column, parse_csv
from progress import ProgressSnapshot
from row_store import AnalysisStatus, RowStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Site Classifier")

APP_BOOT_TS = time.time()
SESSION_TTL_SECONDS = 60 * 60 * 12
UPLOAD_CHUNK_SIZE = 1024 * 1024
MAX_UPLOAD_BYTES = 50 * 1024 * 1024
PREVIEW_ROW_LIMIT = 8
ACTIVE_RUN_STATUSES = {"running", "cancelling"}

SESSION_STORE: dict[str, dict] = {}


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health():
    """Lightweight readiness probe."""
    return {
        "ok": True,
        "app": "site-classifier",
        "uptimeSeconds": round(max(0.0, time.time() - APP_BOOT_TS), 3),
        "model": config.GEMINI_MODEL,
        "apiKeyConfigured": bool(config.resolve_api_key()),
    }

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def ensure_csv_filename(file_name: Optional[str]) -> None:
    """Validate incoming file extension for CSV-focused flows."""
    if not file_name:
        return
    lower = file_name.lower()
    if not (lower.endswith(".csv") or lower.endswith(".txt") or lower.endswith(".tsv")):
        raise HTTPException(status_code=400, detail="Only CSV/TSV uploads are supported.")


async def read_upload_bytes(file: UploadFile, max_bytes: int = MAX_UPLOAD_BYTES) -> bytes:
    """Read uploaded file in chunks with explicit size guard."""
    ensure_csv_filename(file.filename)
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Upload exceeds {max_bytes // (1024 * 1024)}MB limit.",
            )
        chunks.append(chunk)
    raw = b"".join(chunks)
    if not raw:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    return raw


def _clean_stale_sessions() -> None:
    cutoff = time.time() - SESSION_TTL_SECONDS
    stale = [
        sid for sid, session in SESSION_STORE.items()
        if session.get("updatedAt", 0) < cutoff and not _run_is_active(session.get("activeRun"))
    ]
    for sid in stale:
        SESSION_STORE.pop(sid, None)


def _put_session(store: RowStore, file_name: str) -> str:
    _clean_stale_sessions()
    sid = uuid4().hex
    now = time.time()
    SESSION_STORE[sid] = {
        "store": store,
        "fileName": file_name,
        "urlColumn": guess_url_column(store.headers),
        "activeRun": None,
        "lastRunSummary": None,
        "createdAt": now,
        "updatedAt": now,
    }
    return sid


def _touch_session(sid: str) -> dict:
    _clean_stale_sessions()
    session = SESSION_STORE.get(sid)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found or expired.")
    session["updatedAt"] = time.time()
    return session


def _run_is_active(run: Optional[dict]) -> bool:
    return isinstance(run, dict) and str(run.get("status") or "") in ACTIVE_RUN_STATUSES


def _store_counts(store: RowStore) -> dict:
    return {
        "totalRows": len(store),
        "completedRows": store.count(AnalysisStatus.COMPLETED),
        "processingRows": store.count(AnalysisStatus.PROCESSING),
        "idleRows": store.count(AnalysisStatus.IDLE),
    }


def _serialize_run_snapshot(run: Optional[dict]) -> dict:
    if not isinstance(run, dict):
        return {"status": "idle", "runId": None, "progress": None}
    return {
        "runId": run.get("runId"),
        "status": run.get("status"),
        "progress": run.get("progress"),
        "maskedApiKey": run.get("maskedApiKey", ""),
        "startedAt": run.get("startedAt"),
        "finishedAt": run.get("finishedAt"),
        "error": run.get("error", ""),
        "summary": run.get("summary"),
    }


def _build_session_payload(session_id: str, session: dict, include_rows: bool = False) -> dict:
    store: RowStore = session["store"]
    payload = {
        "sessionId": session_id,
        "fileName": session.get("fileName"),
        "headers": list(store.headers),
        "urlColumn": session.get("urlColumn"),
        **_store_counts(store),
        "run": _serialize_run_snapshot(session.get("activeRun")),
    }
    if include_rows:
        payload["rows"] = store.snapshot()
    return payload


def _build_classifier(api_key: str) -> GeminiSiteClassifier:
    return GeminiSiteClassifier(api_key, model=config.GEMINI_MODEL)


async def _run_session_classification_job(session_id: str, run_id: str, classifier) -> None:
    def _get_current_run() -> tuple[Optional[dict], Optional[dict]]:
        session = SESSION_STORE.get(session_id)
        if not session:
            return None, None
        run = session.get("activeRun")
        if not isinstance(run, dict) or run.get("runId") != run_id:
            return session, None
        return session, run

    def _update_run(**kwargs) -> bool:
        session, run = _get_current_run()
        if not session or not run:
            return False
        run.update(kwargs)
        session["updatedAt"] = time.time()
        return True

    def _on_update(snapshot: ProgressSnapshot) -> None:
        _update_run(progress=snapshot.to_dict())

    session, run = _get_current_run()
    if not session or not run:
        return

    try:
        summary = await batch_scheduler.run(
            session["store"],
            session["urlColumn"],
            classifier,
            batch_size=config.BATCH_SIZE,
            pause_seconds=config.BATCH_PAUSE_SECONDS,
            on_update=_on_update,
            cancel_event=run["cancelEvent"],
        )
        _update_run(
            status="cancelled" if summary.cancelled else "done",
            summary=summary.to_dict(),
            finishedAt=time.time(),
        )
        session["lastRunSummary"] = summary.to_dict()
    except Exception as exc:
        traceback.print_exc()
        _update_run(status="error", error=str(exc) or type(exc).__name__, finishedAt=time.time())

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/api/session/upload")
async def session_upload(file: UploadFile = File(...)):
    """
    Parse an uploaded spreadsheet into a new session.
    Every upload replaces the working rows wholesale; nothing is merged.
    """
    raw = await read_upload_bytes(file)
    try:
        store = parse_csv(raw)
    except pl.exceptions.PolarsError as exc:
        raise HTTPException(status_code=400, detail=f"Could not parse CSV: {exc}") from exc
    if len(store) == 0:
        raise HTTPException(status_code=400, detail="No data rows found. Expected a header line and at least one row.")
    file_name = file.filename or "dataset.csv"
    sid = _put_session(store, file_name)
    payload = _build_session_payload(sid, SESSION_STORE[sid])
    payload["previewRows"] = [item.values for item in store.items[:PREVIEW_ROW_LIMIT]]
    return payload


@app.get("/api/sessions")
async def list_sessions():
    """List all non-expired sessions with metadata."""
    _clean_stale_sessions()
    sessions = []
    for sid, session in SESSION_STORE.items():
        sessions.append({
            "sessionId": sid,
            "fileName": session.get("fileName"),
            "totalRows": len(session["store"]),
            "runStatus": _serialize_run_snapshot(session.get("activeRun"))["status"],
            "createdAt": session.get("createdAt", 0),
            "updatedAt": session.get("updatedAt", 0),
        })
    sessions.sort(key=lambda s: s["updatedAt"], reverse=True)
    return {"sessions": sessions}


@app.delete("/api/session/{sessionId}")
async def delete_session(sessionId: str):
    session = _touch_session(sessionId)
    run = session.get("activeRun")
    if _run_is_active(run):
        raise HTTPException(status_code=409, detail="Cancel the running analysis before deleting the session.")
    SESSION_STORE.pop(sessionId, None)
    return {"ok": True, "sessionId": sessionId}


@app.get("/api/session/state")
async def session_state(sessionId: str):
    session = _touch_session(sessionId)
    return _build_session_payload(sessionId, session)


@app.post("/api/session/config")
async def session_set_config(sessionId: str = Form(...), urlColumn: str = Form(...)):
    """Choose which column holds the website URLs."""
    session = _touch_session(sessionId)
    if _run_is_active(session.get("activeRun")):
        raise HTTPException(status_code=409, detail="Cannot change the URL column while a run is active.")
    store: RowStore = session["store"]
    column = str(urlColumn or "").strip()
    if column not in store.headers:
        raise HTTPException(status_code=400, detail=f"Unknown column: {column}")
    session["urlColumn"] = column
    return _build_session_payload(sessionId, session)


@app.get("/api/session/rows")
async def session_rows(sessionId: str, offset: int = 0, limit: int = 0):
    session = _touch_session(sessionId)
    rows = session["store"].snapshot()
    start = max(0, int(offset))
    end = start + int(limit) if limit and limit > 0 else None
    return {
        "sessionId": sessionId,
        "totalRows": len(rows),
        "offset": start,
        "rows": rows[start:end],
    }


@app.post("/api/session/run/start")
async def session_run_start(sessionId: str = Form(...), apiKey: str = Form("")):
    """Start an async classification run for live progress updates."""
    session = _touch_session(sessionId)
    run = session.get("activeRun")
    if _run_is_active(run):
        raise HTTPException(
            status_code=409,
            detail=f"Run {run.get('runId')} is already {run.get('status')}; cancel it or wait for it to finish.",
        )

    api_key = config.resolve_api_key(apiKey)
    if not api_key:
        raise HTTPException(status_code=400, detail="Please provide a Gemini API key first.")
    if not session.get("urlColumn"):
        raise HTTPException(status_code=400, detail="Select the URL column first.")

    classifier = _build_classifier(api_key)
    store: RowStore = session["store"]
    run_id = uuid4().hex
    now = time.time()
    session["activeRun"] = {
        "runId": run_id,
        "status": "running",
        "progress": {**_store_counts(store)},
        "maskedApiKey": config.mask_api_key(api_key),
        "cancelEvent": asyncio.Event(),
        "startedAt": now,
        "finishedAt": None,
        "error": "",
        "summary": None,
    }
    session["updatedAt"] = now
    session["activeRun"]["task"] = asyncio.create_task(
        _run_session_classification_job(sessionId, run_id, classifier)
    )

    payload = _serialize_run_snapshot(session.get("activeRun"))
    payload["sessionId"] = sessionId
    return payload


@app.get("/api/session/run/progress")
async def session_run_progress(sessionId: str, includeRows: bool = False):
    """Read progress for the active async classification run."""
    session = _touch_session(sessionId)
    return _build_session_payload(sessionId, session, include_rows=includeRows)


@app.post("/api/session/run/cancel")
async def session_run_cancel(sessionId: str = Form(...)):
    """Stop after the batch in flight; rows already finished keep their results."""
    session = _touch_session(sessionId)
    run = session.get("activeRun")
    if not isinstance(run, dict):
        raise HTTPException(status_code=400, detail="No active classification run.")
    if _run_is_active(run):
        run["cancelEvent"].set()
        run["status"] = "cancelling"
    payload = _serialize_run_snapshot(run)
    payload["sessionId"] = sessionId
    return payload


@app.post("/api/session/reset")
async def session_reset(sessionId: str = Form(...)):
    """Put every row back to IDLE so the next run classifies them again."""
    session = _touch_session(sessionId)
    if _run_is_active(session.get("activeRun")):
        raise HTTPException(status_code=409, detail="Cannot reset rows while a run is active.")
    reset_count = session["store"].reset()
    session["activeRun"] = None
    payload = _build_session_payload(sessionId, session)
    payload["resetRows"] = reset_count
    return payload


@app.post("/api/session/export")
async def session_export(sessionId: str = Form(...), fileName: str = Form(DEFAULT_EXPORT_FILENAME)):
    """Export the rows with the analysis columns appended."""
    session = _touch_session(sessionId)
    content = generate_csv(session["store"])
    buf = io.BytesIO(content.encode("utf-8"))
    safe_name = (fileName or DEFAULT_EXPORT_FILENAME).strip() or DEFAULT_EXPORT_FILENAME
    if not safe_name.lower().endswith(".csv"):
        safe_name = f"{safe_name}.csv"
    return StreamingResponse(
        buf,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={safe_name}"},
    )


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Site Classifier API server.")
    parser.add_argument("--host", default=config.SERVER_HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=config.SERVER_PORT, help="Bind port")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="uvicorn log level")
    return parser


def main() -> None:
    args = _build_arg_parser().parse_args()
    import uvicorn

    uvicorn.run(
        app,
        host=str(args.host),
        port=int(args.port),
        log_level=str(args.log_level).lower(),
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":
    main()
