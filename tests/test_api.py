from __future__ import annotations

import time

from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient
from jose import jwt
import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

import api.main as api_main
from api.auth import CurrentUser, get_current_user, verify_token
from db.models import UserFavorite, VideoTaskDefinition, VideoTaskStatus
from pipeline.migrator import MigrationResult
from pipeline.reconciler import ReconcilerConfig, StatusReconciler
from pipeline.store import TaskStore
from pipeline.submitter import TaskSubmitter
from providers import PollResult, ProviderError, ProviderVariant, UnifiedStatus
from tests.fakes import FakeAdapter


@pytest.fixture
def adapters():
    return {
        ProviderVariant.OFFICIAL: FakeAdapter(ProviderVariant.OFFICIAL, external_task_id="k-1"),
        ProviderVariant.AGGREGATOR: FakeAdapter(ProviderVariant.AGGREGATOR, external_task_id="a-1"),
    }


@pytest.fixture
def client(monkeypatch, engine, adapters, provider_config):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    monkeypatch.setattr(api_main, "SessionLocal", factory)
    monkeypatch.setattr(
        api_main,
        "build_submitter",
        lambda session: TaskSubmitter(TaskStore(session), adapters, provider_config),
    )
    monkeypatch.setattr(
        api_main,
        "build_reconciler",
        lambda session: StatusReconciler(
            TaskStore(session), adapters, provider_config, ReconcilerConfig(pacing_s=0)
        ),
    )
    monkeypatch.setenv("OPERATOR_TOKEN", "ops-secret")
    api_main.app.dependency_overrides[get_current_user] = lambda: CurrentUser(id="user-1")
    yield TestClient(api_main.app)
    api_main.app.dependency_overrides.clear()


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_create_text_to_video(client, session, adapters) -> None:
    response = client.post(
        "/tasks/text-to-video",
        json={"prompt": "a cat", "aspect_ratio": "1:1", "cfg": 0.5, "provider": "official"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["external_task_id"] == "k-1"
    assert body["status"] == "pending"
    assert body["credits"] == 1
    assert session.get(VideoTaskDefinition, body["task_id"]).user_id == "user-1"


def test_create_text_to_video_validation_error_maps_to_400(client) -> None:
    response = client.post("/tasks/text-to-video", json={"prompt": "a cat", "duration": "10s"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "unsupported_tier"


def test_image_to_video_insufficient_credits(client, session) -> None:
    response = client.post(
        "/tasks/image-to-video",
        data={"prompt": "waves", "high_quality": "true"},
        files={"input_image": ("in.png", b"\x89PNG", "image/png")},
    )

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "insufficient_credits"
    assert detail["required"] == 6
    assert detail["available"] == 0
    assert session.execute(select(VideoTaskDefinition)).first() is None


def test_image_to_video_submits_upload(client, grant_credits, adapters) -> None:
    grant_credits("user-1", 10)
    response = client.post(
        "/tasks/image-to-video",
        data={"prompt": "waves", "cfg": "0.4"},
        files={"input_image": ("in.png", b"\x89PNG", "image/png")},
    )

    assert response.status_code == 200
    assert response.json()["credits"] == 2
    request = adapters[ProviderVariant.AGGREGATOR].submitted[0]
    assert request.input_image.content == b"\x89PNG"
    assert request.input_image.content_type == "image/png"
    assert request.cfg == pytest.approx(0.4)


def test_dispatch_failure_returns_502_with_task_id(client, adapters) -> None:
    adapters[ProviderVariant.AGGREGATOR].submit_error = ProviderError(
        code="http_500", message="boom", provider="aggregator"
    )
    response = client.post("/tasks/text-to-video", json={"prompt": "a cat"})

    assert response.status_code == 502
    assert response.json()["detail"]["task_id"] is not None


def test_task_lifecycle_endpoints(client, make_task, session) -> None:
    definition, _ = make_task(status="processing", external_task_id="k-1")
    task_id = definition.id

    snapshot = client.get(f"/tasks/{task_id}").json()
    assert snapshot["status"] == "processing"
    assert snapshot["external_task_id"] == "k-1"

    renamed = client.patch(f"/tasks/{task_id}", json={"title": "  Sunset cat  "}).json()
    assert renamed == {"task_id": task_id, "title": "Sunset cat"}

    assert client.post(f"/tasks/{task_id}/favorite").json()["created"] is True
    listing = client.get("/tasks").json()
    assert listing[0]["task_id"] == task_id
    assert listing[0]["is_favorite"] is True
    assert listing[0]["prompt"] == "Sunset cat"

    assert client.delete(f"/tasks/{task_id}").json() == {"task_id": task_id, "deleted": True}
    session.expire_all()
    assert session.execute(select(VideoTaskStatus)).first() is None
    assert session.execute(select(UserFavorite)).first() is None


def test_other_users_tasks_are_not_found(client, make_task) -> None:
    definition, _ = make_task(user_id="user-2")
    assert client.get(f"/tasks/{definition.id}").status_code == 404
    assert client.delete(f"/tasks/{definition.id}").status_code == 404


def test_credits(client, grant_credits) -> None:
    grant_credits("user-1", 7)
    assert client.get("/credits").json() == {"user_id": "user-1", "credits_balance": 7}


def test_ops_require_operator_token(client) -> None:
    assert client.post("/ops/reconcile").status_code == 401
    assert client.post("/ops/reconcile", headers={"X-Operator-Token": "wrong"}).status_code == 401


def test_ops_reconcile_runs_pass(client, make_task, adapters, session) -> None:
    _, row = make_task(status="queued", external_task_id="k-1")
    adapters[ProviderVariant.OFFICIAL].polls["k-1"] = PollResult(
        external_task_id="k-1", status=UnifiedStatus.PROCESSING
    )

    response = client.post("/ops/reconcile", headers={"X-Operator-Token": "ops-secret"})

    assert response.status_code == 200
    assert response.json()["updated"] == 1
    session.refresh(row)
    assert row.status == "processing"


def test_ops_migrate_single_task(monkeypatch) -> None:
    calls = []

    class _Migrator:
        def migrate(self, task_id):
            calls.append(task_id)
            return MigrationResult(task_id=task_id, success=True, video_url="https://media/x.mp4")

    class _Session:
        def close(self):
            return None

    monkeypatch.setattr(api_main, "SessionLocal", _Session)
    monkeypatch.setattr(api_main, "build_migrator", lambda _session: _Migrator())

    result = api_main.ops_migrate(api_main.OpsMigrateRequest(task_id=5), _guard=None)

    assert calls == [5]
    assert result["success"] is True
    assert result["video_url"] == "https://media/x.mp4"


def test_callback_updates_task(client, make_task, session, monkeypatch) -> None:
    monkeypatch.setenv("PROVIDER_CALLBACK_TOKEN", "cb-secret")
    _, row = make_task(status="processing", external_task_id="k-1")
    payload = {"task_id": "k-1", "status": "completed", "result_url": "https://cdn.kling/final.mp4"}

    assert client.post("/callbacks/official", json=payload).status_code == 401
    assert client.post("/callbacks/runway?token=cb-secret", json=payload).status_code == 404

    response = client.post("/callbacks/official?token=cb-secret", json=payload)
    assert response.status_code == 200
    assert response.json()["accepted"] is True
    session.refresh(row)
    assert row.status == "completed"


def test_require_operator_without_token_configured(monkeypatch) -> None:
    monkeypatch.delenv("OPERATOR_TOKEN", raising=False)
    monkeypatch.setenv("ALLOW_OPS_WITHOUT_TOKEN", "0")
    with pytest.raises(HTTPException) as excinfo:
        api_main._require_operator(None)
    assert excinfo.value.status_code == 503

    monkeypatch.setenv("ALLOW_OPS_WITHOUT_TOKEN", "1")
    assert api_main._require_operator(None) is None


def _token(secret: str, **claims) -> str:
    payload = {"sub": "user-1", "email": "u@example.com", "aud": "authenticated", "exp": int(time.time()) + 600}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def test_verify_token() -> None:
    user = verify_token(_token("s3cret"), "s3cret")
    assert user == CurrentUser(id="user-1", email="u@example.com")
    assert verify_token(_token("s3cret"), "other") is None
    assert verify_token(_token("s3cret", exp=int(time.time()) - 10), "s3cret") is None
    assert verify_token(_token("s3cret", aud="anon"), "s3cret") is None


def test_get_current_user_requires_bearer(monkeypatch) -> None:
    monkeypatch.setenv("SUPABASE_JWT_SECRET", "s3cret")
    with pytest.raises(HTTPException) as excinfo:
        get_current_user(None)
    assert excinfo.value.status_code == 401

    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=_token("s3cret"))
    assert get_current_user(credentials).id == "user-1"
