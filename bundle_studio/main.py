"""
bundle_studio/main.py
-----------------------------------------------------------------------------
FastAPI application entrypoint for the Template Bundle Studio.

This module is a **thin routing layer**: each route handler calls into the
session reconciler and returns the result.  All business logic lives in
dedicated modules:

Domain modules
~~~~~~~~~~~~~~
- ``bundle_studio.schema``        – Pydantic v2 session, options, and API models.
- ``bundle_studio.archive``       – Zip pack / unpack of template bundles.
- ``bundle_studio.bundle_client`` – Synchronous HTTP wrapper around the bundle server.
- ``bundle_studio.resume_store``  – JSON-file stand-in for browser local storage.
- ``bundle_studio.reconciler``    – Load / save / import state machine.
- ``bundle_studio.samples``       – Sample template loading.

Run with:
    uvicorn bundle_studio.main:app --reload --host 127.0.0.1 --port 8243

Endpoints
---------
GET    /api/samples                 → list of sample template names
GET    /api/session                 → current session (asset bytes omitted)
PATCH  /api/session                 → apply an editor patch (marks dirty)
POST   /api/session/new             → replace the session with a sample, unlink
GET    /api/status                  → current bundle, dirty flag, last error
DELETE /api/status/error            → clear the last error
GET    /api/bundles                 → remote bundle directory listing
POST   /api/bundles/{id}/load       → fetch a remote bundle into the session
POST   /api/bundles/save            → store the session remotely under a name
POST   /api/import                  → load a bundle zip upload into the session
GET    /api/export                  → download the session (or part of it) as a zip
POST   /api/assets                  → add or replace an asset (multipart upload)
DELETE /api/assets/{name}           → remove an asset
POST   /api/before-exit             → run the exit hook (persist resume pointer)

Architecture notes
------------------
- All blocking I/O (bundle server calls, state file) lives in regular ``def``
  route handlers.  FastAPI runs those in a threadpool so the async event
  loop is never blocked.
- The reconciler is created in the lifespan hook, which also calls
  ``initialize()`` (resume the last bundle) at startup and runs the exit
  hook at shutdown.  A reconciler already present on ``app.state`` is kept,
  which is how tests inject one wired to fakes.
"""

from __future__ import annotations

import io
import logging
import os
import tomllib
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from dotenv import load_dotenv
from fastapi import FastAPI, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from bundle_studio.archive import DOWNLOAD_FILENAME, MAX_FILE_SIZE, MAX_UPLOAD_SIZE
from bundle_studio.bundle_client import HttpBundleDirectory
from bundle_studio.errors import MalformedModelError, ReconcilerBusyError
from bundle_studio.reconciler import BUSY_MESSAGE, SessionReconciler
from bundle_studio.resume_store import ResumeStore
from bundle_studio.samples import list_sample_names, load_sample_session
from bundle_studio.schema import (
    Asset,
    BeforeExitDecision,
    BundleInfo,
    DownloadPreset,
    ReconcilerState,
    SaveBundleRequest,
    SaveBundleResponse,
    SessionPatch,
    SessionView,
)

# -----------------------------------------------------------------------------
# Bootstrap
# -----------------------------------------------------------------------------

load_dotenv()

logger = logging.getLogger(__name__)

# Resolve paths relative to this file so the app works regardless of the
# working directory from which uvicorn is launched.
_HERE = Path(__file__).parent
_STATE_FILE = Path(
    os.getenv("BUNDLE_STATE_FILE", str(_HERE.parent / "state" / "local_storage.json"))
)

# Read version from pyproject.toml (single source of truth).
_PYPROJECT = _HERE.parent / "pyproject.toml"
with open(_PYPROJECT, "rb") as _f:
    _APP_VERSION: str = tomllib.load(_f)["project"]["version"]


def build_reconciler() -> SessionReconciler:
    """Wire the default sample session to the HTTP bundle directory and state file."""
    return SessionReconciler(
        load_sample_session(),
        HttpBundleDirectory(),
        ResumeStore(_STATE_FILE),
        blank_factory=load_sample_session,
    )


def run_exit_hook(reconciler: SessionReconciler) -> BeforeExitDecision:
    """
    Apply ``on_before_exit``: persist the resume pointer, warn on unsaved work.

    The reconciler only decides; writing local storage is the host's job.
    """
    decision = reconciler.on_before_exit()
    if decision.persist is not None:
        try:
            reconciler.store.set(decision.persist.key, decision.persist.value)
        except OSError as exc:
            logger.warning("Failed to persist resume pointer: %s", exc)
    if decision.should_warn:
        logger.warning(decision.message)
    return decision


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    reconciler = getattr(app.state, "reconciler", None)
    if reconciler is None:
        reconciler = build_reconciler()
        app.state.reconciler = reconciler

    result = await run_in_threadpool(reconciler.initialize)
    logger.info("Session initialised: resume status %s", result.status.value)

    yield

    run_exit_hook(reconciler)


# -----------------------------------------------------------------------------
# FastAPI app
# -----------------------------------------------------------------------------

app = FastAPI(
    title="Template Bundle Studio",
    description=(
        "Persistence layer of a PDF-template editor: packs the editing session "
        "into zip bundles and keeps it in step with a remote bundle directory."
    ),
    version=_APP_VERSION,
    lifespan=lifespan,
)


def _reconciler(request: Request) -> SessionReconciler:
    return request.app.state.reconciler


def _raise_for_failure(reconciler: SessionReconciler, status_code: int) -> None:
    """Turn a failed reconciler operation into an HTTP error carrying ``last_error``."""
    if reconciler.last_error == BUSY_MESSAGE:
        raise HTTPException(status_code=409, detail=BUSY_MESSAGE)
    raise HTTPException(status_code=status_code, detail=reconciler.last_error)


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


@app.get("/api/samples", summary="List available sample templates")
def list_samples() -> list[str]:
    return list_sample_names()


@app.get("/api/session", response_model=SessionView, summary="Get the current session")
def get_session(request: Request) -> SessionView:
    return SessionView.from_session(_reconciler(request).session)


@app.patch("/api/session", response_model=SessionView, summary="Apply an editor patch")
def patch_session(patch: SessionPatch, request: Request) -> SessionView:
    """
    Apply the fields present in the request body to the session.

    Raises
    ------
    HTTPException(422) : If the example model is not valid JSON or the
                         options have the wrong shape.
    HTTPException(409) : If a load / save / import is in flight.
    """
    reconciler = _reconciler(request)
    try:
        reconciler.apply_patch(patch)
    except (MalformedModelError, ValidationError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ReconcilerBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SessionView.from_session(reconciler.session)


@app.post("/api/session/new", response_model=ReconcilerState, summary="Start a new session")
def new_session(request: Request, sample: str | None = None) -> ReconcilerState:
    """
    Replace the session with a sample template (the default one unless
    ``sample`` names another) and unlink it from any remote bundle.
    """
    reconciler = _reconciler(request)
    blank = load_sample_session(sample) if sample else None
    if not reconciler.new_session(blank):
        _raise_for_failure(reconciler, 409)
    return reconciler.state


@app.get("/api/status", response_model=ReconcilerState, summary="Reconciler state")
def get_status(request: Request) -> ReconcilerState:
    return _reconciler(request).state


@app.delete("/api/status/error", response_model=ReconcilerState, summary="Clear the last error")
def clear_error(request: Request) -> ReconcilerState:
    reconciler = _reconciler(request)
    reconciler.clear_error()
    return reconciler.state


# -----------------------------------------------------------------------------
# Remote bundles
# -----------------------------------------------------------------------------


@app.get("/api/bundles", response_model=list[BundleInfo], summary="List remote bundles")
def list_bundles(request: Request) -> list[BundleInfo]:
    """
    Return the remote bundle directory.

    An unreachable bundle server yields an empty list (see ``/api/status``
    for the error text) so the editor can still render.
    """
    return _reconciler(request).list_remote_bundles()


@app.post(
    "/api/bundles/{bundle_id}/load",
    response_model=ReconcilerState,
    summary="Load a remote bundle into the session",
)
def load_bundle(bundle_id: str, request: Request) -> ReconcilerState:
    """
    Raises
    ------
    HTTPException(502) : If the fetch or decode failed; the session is unchanged.
    HTTPException(409) : If another operation is in flight.
    """
    reconciler = _reconciler(request)
    if not reconciler.fetch_and_load(bundle_id):
        _raise_for_failure(reconciler, 502)
    return reconciler.state


@app.post(
    "/api/bundles/save",
    response_model=SaveBundleResponse,
    summary="Store the session in the remote bundle directory",
)
def save_bundle(req: SaveBundleRequest, request: Request) -> SaveBundleResponse:
    """
    Raises
    ------
    HTTPException(502) : If packing or storing failed; the session stays dirty.
    HTTPException(409) : If another operation is in flight.
    """
    reconciler = _reconciler(request)
    bundle_id = reconciler.save_current(req.name)
    if not bundle_id:
        _raise_for_failure(reconciler, 502)
    return SaveBundleResponse(id=bundle_id, name=req.name)


# -----------------------------------------------------------------------------
# Local files
# -----------------------------------------------------------------------------


@app.post("/api/import", response_model=ReconcilerState, summary="Import a bundle zip")
async def import_bundle(file: UploadFile, request: Request) -> ReconcilerState:
    """
    Load an uploaded bundle into the session.

    The session is unlinked from any remote bundle afterwards.

    Raises
    ------
    HTTPException(400) : If the upload is too large or not a valid bundle.
    HTTPException(409) : If another operation is in flight.
    """
    data = await file.read()
    if len(data) > MAX_UPLOAD_SIZE:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Upload size ({len(data):,} bytes) exceeds the "
                f"{MAX_UPLOAD_SIZE:,}-byte limit."
            ),
        )

    reconciler = _reconciler(request)
    if not await run_in_threadpool(reconciler.import_local_file, data):
        _raise_for_failure(reconciler, 400)
    return reconciler.state


@app.get("/api/export", summary="Download the session as a bundle zip")
def export_bundle(request: Request, only: DownloadPreset | None = None) -> StreamingResponse:
    """
    Stream the session (or the part named by ``only``) as a zip download.

    Raises
    ------
    HTTPException(422) : If the example model is not valid JSON.
    HTTPException(409) : If another operation is in flight.
    """
    try:
        zip_bytes = _reconciler(request).export_local(only)
    except MalformedModelError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ReconcilerBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return StreamingResponse(
        io.BytesIO(zip_bytes),
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{DOWNLOAD_FILENAME}"',
        },
    )


# -----------------------------------------------------------------------------
# Assets
# -----------------------------------------------------------------------------


@app.post("/api/assets", response_model=SessionView, summary="Add or replace an asset")
async def upload_asset(
    request: Request,
    file: UploadFile,
    name: str | None = Form(default=None),
) -> SessionView:
    """
    Add the uploaded file as an asset named ``name`` (default: the upload's
    filename).  An existing asset of that name is replaced in place.

    Raises
    ------
    HTTPException(400) : If the file is too large or the name is not a safe path.
    HTTPException(409) : If another operation is in flight.
    """
    data = await file.read()
    if len(data) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"Asset size ({len(data):,} bytes) exceeds the {MAX_FILE_SIZE:,}-byte limit.",
        )
    try:
        asset = Asset(name=name or file.filename or "", data=data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    reconciler = _reconciler(request)
    try:
        with reconciler.editing() as session:
            session.add_asset(asset)
    except ReconcilerBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SessionView.from_session(reconciler.session)


@app.delete("/api/assets/{name:path}", response_model=SessionView, summary="Remove an asset")
def delete_asset(name: str, request: Request) -> SessionView:
    reconciler = _reconciler(request)
    try:
        with reconciler.editing() as session:
            removed = session.remove_asset(name)
    except ReconcilerBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not removed:
        raise HTTPException(status_code=404, detail=f"Asset '{name}' not found.")
    return SessionView.from_session(reconciler.session)


# -----------------------------------------------------------------------------
# Exit hook
# -----------------------------------------------------------------------------


@app.post(
    "/api/before-exit",
    response_model=BeforeExitDecision,
    summary="Persist the resume pointer and report unsaved changes",
)
def before_exit(request: Request) -> BeforeExitDecision:
    """
    Called by the editor's page-unload handler.  The response tells the
    editor whether to show the unsaved-changes prompt.
    """
    return run_exit_hook(_reconciler(request))
