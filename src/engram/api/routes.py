"""FastAPI HTTP API for engram."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from engram.config import Config
from engram.core import Engram
from engram.exceptions import CaptureError, DuplicateKind, InsufficientEvidence, PublishConflict, PublishError
from engram.types import NoOp, PatternState, RuleStatus


# --- Request/Response Models ---

class CaptureResponse(BaseModel):
    id: int
    session_id: str
    tool_name: str
    keys: dict[str, str] = Field(default_factory=dict)


class SessionRequest(BaseModel):
    timestamp: datetime | None = None


class SessionResponse(BaseModel):
    session_id: str
    status: str


class FindItem(BaseModel):
    kind: str
    id: int
    score: float
    timestamp: datetime
    text: str
    source: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class FindResponse(BaseModel):
    results: list[FindItem]
    count: int
    query: str


class PatternItem(BaseModel):
    id: int
    state: str
    statement: str
    confidence: float
    evidence: int
    contradictions: int
    open_contradictions: int
    version: int
    updated_at: datetime


class PatternListResponse(BaseModel):
    patterns: list[PatternItem]
    count: int


class RuleItem(BaseModel):
    pattern_id: int
    version: int
    confidence: float
    statement: str
    scope_globs: list[str]
    file_path: str
    status: str
    published_at: datetime


class RuleListResponse(BaseModel):
    rules: list[RuleItem]
    count: int


def _pattern_item(p) -> PatternItem:
    return PatternItem(
        id=p.id, state=p.state.value, statement=p.statement, confidence=p.confidence,
        evidence=p.evidence_count, contradictions=p.contradiction_count,
        open_contradictions=len(p.open_counter_ids), version=p.version, updated_at=p.updated_at,
    )


# --- App factory ---

_engram: Engram | None = None


def get_engram() -> Engram:
    if _engram is None:
        raise HTTPException(status_code=500, detail="engram not initialized")
    return _engram


def create_app(config: Config | None = None, engram: Engram | None = None,
               background: bool = True) -> FastAPI:
    global _engram
    _engram = engram or Engram(config)
    config = _engram.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        task = None
        if background and config.consolidation.interval_seconds > 0:
            task = asyncio.create_task(
                _engram.scheduler.run_periodic(config.consolidation.interval_seconds, stop)
            )
        try:
            yield
        finally:
            stop.set()
            _engram.scheduler.cancel()
            if task is not None:
                await task
            await _engram.close()

    app = FastAPI(
        title="engram API",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Bearer token auth middleware
    token = config.api.bearer_token

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.url.path in ("/api/v1/health", "/docs", "/openapi.json"):
            return await call_next(request)
        if token:
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != token:
                return ORJSONResponse({"detail": "Unauthorized"}, status_code=401)
        return await call_next(request)

    # --- Routes ---

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok", "service": "engram"}

    @app.get("/api/v1/status")
    async def get_status(eg: Engram = Depends(get_engram)):
        return eg.status()

    @app.post("/api/v1/capture", response_model=CaptureResponse, status_code=201)
    async def capture(background_tasks: BackgroundTasks, payload: dict[str, Any] = Body(...),
                      eg: Engram = Depends(get_engram)):
        try:
            memory = eg.capture(payload)
        except CaptureError as e:
            raise HTTPException(status_code=422, detail=e.message)
        except DuplicateKind as e:
            raise HTTPException(status_code=409, detail={"error": e.message, "existing_id": e.existing_id})
        background_tasks.add_task(eg.drain)
        return CaptureResponse(
            id=memory.id, session_id=memory.session_id, tool_name=memory.tool_name,
            keys=memory.key_dict(),
        )

    @app.post("/api/v1/sessions/{session_id}/start", response_model=SessionResponse)
    async def session_start(session_id: str, req: SessionRequest | None = None,
                            eg: Engram = Depends(get_engram)):
        eg.start_session(session_id, req.timestamp if req else None)
        return SessionResponse(session_id=session_id, status="started")

    @app.post("/api/v1/sessions/{session_id}/end", response_model=SessionResponse)
    async def session_end(session_id: str, req: SessionRequest | None = None,
                          eg: Engram = Depends(get_engram)):
        if not eg.end_session(session_id, req.timestamp if req else None):
            raise HTTPException(status_code=404, detail=f"unknown session {session_id}")
        return SessionResponse(session_id=session_id, status="ended")

    @app.get("/api/v1/find", response_model=FindResponse)
    async def find(q: str, limit: int = 10, eg: Engram = Depends(get_engram)):
        hits = await eg.find(q, limit=limit)
        return FindResponse(
            results=[FindItem(**h.model_dump()) for h in hits],
            count=len(hits),
            query=q,
        )

    @app.post("/api/v1/consolidate")
    async def consolidate(eg: Engram = Depends(get_engram)):
        report = await eg.consolidate()
        if report is None:
            return {"status": "coalesced"}
        return {"status": "skipped" if report.skipped else "done", "report": report.model_dump(mode="json")}

    @app.get("/api/v1/patterns", response_model=PatternListResponse)
    async def list_patterns(state: str | None = None, eg: Engram = Depends(get_engram)):
        if state:
            try:
                states = {PatternState(state)}
            except ValueError:
                raise HTTPException(status_code=422, detail=f"unknown state {state}")
            patterns = eg.patterns.all(states)
        else:
            patterns = eg.patterns.all()
        return PatternListResponse(patterns=[_pattern_item(p) for p in patterns], count=len(patterns))

    @app.get("/api/v1/patterns/{pattern_id}")
    async def get_pattern(pattern_id: int, eg: Engram = Depends(get_engram)):
        pattern = eg.patterns.get(pattern_id)
        if pattern is None:
            raise HTTPException(status_code=404, detail=f"unknown pattern {pattern_id}")
        history = eg.store.list_audit_events(target_type="pattern", target_id=str(pattern_id))
        return {
            **_pattern_item(pattern).model_dump(mode="json"),
            "claim": pattern.claim.model_dump(mode="json"),
            "evidence_ids": pattern.evidence_ids,
            "counter_ids": pattern.counter_ids,
            "resolved_ids": pattern.resolved_ids,
            "history": [
                {"action": e.action, "detail": e.detail, "created_at": e.created_at.isoformat()}
                for e in history
            ],
        }

    @app.post("/api/v1/patterns/{pattern_id}/publish")
    async def publish_pattern(pattern_id: int, force: bool = False, eg: Engram = Depends(get_engram)):
        try:
            [result] = await eg.publish(pattern_id, force=force)
        except PublishConflict as e:
            raise HTTPException(status_code=409, detail={"error": e.message, "path": e.path})
        except (PublishError, InsufficientEvidence) as e:
            raise HTTPException(status_code=500, detail=e.message)
        if isinstance(result, NoOp):
            if result.reason == "not_found":
                raise HTTPException(status_code=404, detail=f"unknown pattern {pattern_id}")
            return {"status": "noop", "reason": result.reason}
        return {"status": "published", "rule": result.model_dump(mode="json")}

    @app.get("/api/v1/rules", response_model=RuleListResponse)
    async def list_rules(status: str | None = "active", eg: Engram = Depends(get_engram)):
        try:
            wanted = RuleStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=422, detail=f"unknown status {status}")
        rules = eg.store.list_rules(status=wanted)
        return RuleListResponse(
            rules=[
                RuleItem(
                    pattern_id=r.pattern_id, version=r.version, confidence=r.confidence,
                    statement=r.statement, scope_globs=r.scope_globs, file_path=r.file_path,
                    status=r.status.value, published_at=r.published_at,
                )
                for r in rules
            ],
            count=len(rules),
        )

    return app
