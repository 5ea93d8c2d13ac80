from __future__ import annotations

import logging
from os import getenv
from typing import Literal, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from api.auth import CurrentUser, get_current_user
from db.session import SessionLocal
from pipeline.errors import TaskRequestError
from pipeline.services import build_migrator, build_reconciler, build_submitter
from pipeline.store import StoreError, TaskStore, snapshot
from pipeline.submitter import DEFAULT_CFG, SubmitParams
from providers import InputImage, ProviderError, ProviderVariant, TaskType

logger = logging.getLogger(__name__)

app = FastAPI(title="KaraVideo API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    expected = getenv("OPERATOR_TOKEN", "")
    if not expected:
        if getenv("ALLOW_OPS_WITHOUT_TOKEN", "0") == "1":
            return
        raise HTTPException(status_code=503, detail="operator_token_missing")
    if x_operator_token != expected:
        raise HTTPException(status_code=401, detail="operator_token_required")


def _http_error(exc: TaskRequestError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail())


def _provider_variant(value: str | None) -> ProviderVariant | None:
    if not value:
        return None
    try:
        return ProviderVariant(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="unsupported_provider") from None


class TextToVideoRequest(BaseModel):
    prompt: str = Field(min_length=1)
    negative_prompt: str = ""
    aspect_ratio: Literal["1:1", "16:9", "9:16"] = "1:1"
    cfg: float = Field(default=DEFAULT_CFG, ge=0.0, le=1.0)
    high_quality: bool = False
    duration: str = "5s"
    model: str = "kling"
    provider: Optional[ProviderVariant] = None
    camera_type: Optional[str] = None
    camera_value: Optional[float] = None


class RenameRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)


class OpsReconcileRequest(BaseModel):
    enqueue: bool = False


class OpsMigrateRequest(BaseModel):
    task_id: Optional[int] = None
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    enqueue: bool = False


def _submit(user: CurrentUser, task_type: TaskType, params: SubmitParams) -> dict:
    session = SessionLocal()
    try:
        outcome = build_submitter(session).submit(user.id, task_type, params)
        return {
            "task_id": outcome.task_id,
            "external_task_id": outcome.external_task_id,
            "status": outcome.status,
            "credits": outcome.credits,
            "provider": outcome.provider,
        }
    except TaskRequestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/tasks/text-to-video")
def create_text_to_video(
    req: TextToVideoRequest,
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    params = SubmitParams(
        prompt=req.prompt,
        negative_prompt=req.negative_prompt,
        aspect_ratio=req.aspect_ratio,
        cfg=req.cfg,
        high_quality=req.high_quality,
        duration=req.duration,
        model=req.model,
        provider=req.provider,
        camera_type=req.camera_type,
        camera_value=req.camera_value,
    )
    return _submit(user, TaskType.TEXT_TO_VIDEO, params)


@app.post("/tasks/image-to-video")
def create_image_to_video(
    input_image: UploadFile = File(...),
    prompt: str = Form(...),
    negative_prompt: str = Form(""),
    aspect_ratio: str = Form("1:1"),
    cfg: float = Form(DEFAULT_CFG),
    high_quality: bool = Form(False),
    duration: Optional[str] = Form(None),
    model: str = Form("kling"),
    provider: Optional[str] = Form(None),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    image = InputImage(
        filename=input_image.filename or "input_image",
        content=input_image.file.read(),
        content_type=input_image.content_type or "application/octet-stream",
    )
    params = SubmitParams(
        prompt=prompt,
        negative_prompt=negative_prompt,
        aspect_ratio=aspect_ratio,
        cfg=cfg,
        high_quality=high_quality,
        duration=duration or ("10s" if high_quality else "5s"),
        model=model,
        provider=_provider_variant(provider),
        input_image=image,
    )
    return _submit(user, TaskType.IMAGE_TO_VIDEO, params)


@app.get("/tasks")
def list_tasks(user: CurrentUser = Depends(get_current_user)) -> list[dict]:
    session = SessionLocal()
    try:
        return jsonable_encoder(TaskStore(session).list_creations(user.id))
    finally:
        session.close()


@app.get("/tasks/{task_id}")
def get_task(task_id: int, user: CurrentUser = Depends(get_current_user)) -> dict:
    session = SessionLocal()
    try:
        store = TaskStore(session)
        definition = store.require_definition(task_id, user.id)
        return jsonable_encoder(snapshot(definition, store.get_status(task_id)))
    except TaskRequestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()


@app.patch("/tasks/{task_id}")
def rename_task(
    task_id: int,
    req: RenameRequest,
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    session = SessionLocal()
    try:
        definition = TaskStore(session).rename(task_id, user.id, req.title.strip())
        return {"task_id": definition.id, "title": definition.prompt}
    except TaskRequestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()


@app.delete("/tasks/{task_id}")
def delete_task(task_id: int, user: CurrentUser = Depends(get_current_user)) -> dict:
    session = SessionLocal()
    try:
        TaskStore(session).delete_task(task_id, user.id)
        return {"task_id": task_id, "deleted": True}
    except TaskRequestError as exc:
        raise _http_error(exc) from exc
    except StoreError as exc:
        logger.error("delete of task %s failed: %s", task_id, exc)
        raise HTTPException(status_code=500, detail="task_delete_failed") from exc
    finally:
        session.close()


@app.post("/tasks/{task_id}/favorite")
def add_favorite(task_id: int, user: CurrentUser = Depends(get_current_user)) -> dict:
    session = SessionLocal()
    try:
        created = TaskStore(session).add_favorite(task_id, user.id)
        return {"task_id": task_id, "is_favorite": True, "created": created}
    except TaskRequestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()


@app.delete("/tasks/{task_id}/favorite")
def remove_favorite(task_id: int, user: CurrentUser = Depends(get_current_user)) -> dict:
    session = SessionLocal()
    try:
        removed = TaskStore(session).remove_favorite(task_id, user.id)
        return {"task_id": task_id, "is_favorite": False, "removed": removed}
    finally:
        session.close()


@app.get("/credits")
def get_credits(user: CurrentUser = Depends(get_current_user)) -> dict:
    session = SessionLocal()
    try:
        return {"user_id": user.id, "credits_balance": TaskStore(session).get_credit_balance(user.id)}
    finally:
        session.close()


@app.post("/ops/reconcile")
def ops_reconcile(
    req: OpsReconcileRequest = OpsReconcileRequest(),
    _guard: None = Depends(_require_operator),
) -> dict:
    if req.enqueue:
        from pipeline.queue import enqueue_reconcile

        return {"enqueued": True, **enqueue_reconcile()}

    session = SessionLocal()
    try:
        report = build_reconciler(session).run_pass()
        return jsonable_encoder(report.as_dict())
    finally:
        session.close()


@app.post("/ops/migrate")
def ops_migrate(
    req: OpsMigrateRequest = OpsMigrateRequest(),
    _guard: None = Depends(_require_operator),
) -> dict:
    if req.enqueue:
        from pipeline.queue import enqueue_migration, enqueue_task_migration

        if req.task_id is not None:
            return {"enqueued": True, **enqueue_task_migration(req.task_id)}
        return {"enqueued": True, **enqueue_migration(req.limit)}

    session = SessionLocal()
    try:
        migrator = build_migrator(session)
        if req.task_id is not None:
            return migrator.migrate(req.task_id).as_dict()
        results = migrator.migrate_all_pending(req.limit)
        return {
            "selected": len(results),
            "succeeded": sum(1 for item in results if item.success),
            "results": [item.as_dict() for item in results],
        }
    except TaskRequestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()


@app.post("/callbacks/{provider}")
def provider_callback(
    provider: str,
    payload: dict,
    token: str | None = Query(default=None),
) -> dict:
    expected = getenv("PROVIDER_CALLBACK_TOKEN", "")
    if expected and token != expected:
        raise HTTPException(status_code=401, detail="callback_token_required")
    try:
        variant = ProviderVariant(provider)
    except ValueError:
        raise HTTPException(status_code=404, detail="unknown_provider") from None

    session = SessionLocal()
    try:
        outcome = build_reconciler(session).apply_callback(variant, payload)
    except ProviderError as exc:
        logger.warning("rejected %s callback: %s", provider, exc)
        raise HTTPException(status_code=400, detail=exc.code) from exc
    finally:
        session.close()
    if outcome is None:
        return {"accepted": False, "reason": "unknown_task"}
    return {"accepted": True, **outcome.as_dict()}
