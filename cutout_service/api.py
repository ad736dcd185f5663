"""
FastAPI layer exposing one interactive cutout session.

Endpoints:
 - GET  /health
 - POST /image            raw image body, Content-Type is the declared type
 - POST /image/from-url   JSON {imageUrl, refinement?}
 - POST /refine           JSON {refinement}
 - GET  /result
 - GET  /status
"""

from __future__ import annotations

from functools import lru_cache
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, HttpUrl
import requests

from . import config
from .buffers import CompositeResult
from .encoding import MEDIA_TYPES, encode_result
from .segmentation import ModnetSegmenter
from .session import CutoutSession, Outcome, ProcessingFailure

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Cutout Background Removal Service", version="0.1.0")

FAILURE_STATUS = {
    "unsupported_format": 415,
    "mask_shape": 400,
    "no_image": 409,
    "segmentation_error": 502,
}


class FromUrlRequest(BaseModel):
    imageUrl: HttpUrl
    refinement: Optional[int] = None


class RefineRequest(BaseModel):
    refinement: int


class StatusResponse(BaseModel):
    state: str
    progress: int
    refinement: int
    contentId: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@lru_cache()
def get_session() -> CutoutSession:
    return CutoutSession(ModnetSegmenter(settings=settings), settings=settings)


def _download_image(url: str) -> tuple[bytes, Optional[str]]:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds))
    resp.raise_for_status()
    return resp.content, resp.headers.get("Content-Type")


async def _image_response(result: CompositeResult) -> Response:
    content = await run_in_threadpool(encode_result, result, format="PNG")
    return Response(
        content=content,
        media_type=MEDIA_TYPES["PNG"],
        headers={"X-Content-Id": result.content_id, "X-Refinement": str(result.refinement)},
    )


async def _to_response(outcome: Outcome) -> Response:
    if outcome is None:
        raise HTTPException(status_code=409, detail="Superseded by a newer request")
    if isinstance(outcome, ProcessingFailure):
        status = FAILURE_STATUS.get(outcome.kind, 500)
        raise HTTPException(status_code=status, detail={"kind": outcome.kind, "message": outcome.message})
    return await _image_response(outcome)


async def _load(session: CutoutSession, data: bytes, mime: Optional[str], refinement: Optional[int]) -> Response:
    return await _to_response(await session.process_new_image(data, mime, refinement=refinement))


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/image")
async def upload_image(
    request: Request,
    refinement: Optional[int] = Query(None),
    session: CutoutSession = Depends(get_session),
):
    data = await request.body()
    mime = request.headers.get("content-type")
    return await _load(session, data, mime, refinement)


@app.post("/image/from-url")
async def image_from_url(body: FromUrlRequest, session: CutoutSession = Depends(get_session)):
    try:
        data, mime = await run_in_threadpool(_download_image, str(body.imageUrl))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to download image: %s", exc)
        raise HTTPException(status_code=400, detail="Could not download image") from exc
    return await _load(session, data, mime, body.refinement)


@app.post("/refine")
async def refine(body: RefineRequest, session: CutoutSession = Depends(get_session)):
    return await _to_response(await session.reprocess(body.refinement))


@app.get("/result")
async def latest_result(session: CutoutSession = Depends(get_session)):
    result = session.result
    if result is None:
        raise HTTPException(status_code=404, detail="No result yet")
    return await _image_response(result)


@app.get("/status", response_model=StatusResponse)
def status(session: CutoutSession = Depends(get_session)):
    result = session.result
    return StatusResponse(
        state=session.state.value,
        progress=session.progress,
        refinement=session.refinement,
        contentId=result.content_id if result else None,
        width=result.width if result else None,
        height=result.height if result else None,
    )
