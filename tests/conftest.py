from __future__ import annotations

from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional
import itertools

from PIL import Image
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.billing.ledger import open_credit_account
from src.billing.plans import load_plans
from src.core.config import Settings, get_settings
from src.core.metrics import reset_metrics_for_tests
from src.core.rate_limit import reset_regen_rate_limiter_cache
from src.staging.errors import StorageError
from src.staging.notifications import get_notifier
from src.staging.providers import JobBackendError, JobHandle, JobSnapshot, reset_job_backend_cache
from src.staging.providers.base import JOB_PROCESSING, JOB_STARTING
from src.staging.reconciler import ReconciliationJob, get_dispatcher
from src.staging.styles import reset_styles_cache
from src.storage.blob_store import SignedUrl, reset_blob_store_cache
from src.storage.db import Base, load_models
from src.storage.models import Profile, Project


REPO_ROOT = Path(__file__).resolve().parents[1]


def _clear_caches() -> None:
    get_settings.cache_clear()
    reset_styles_cache()
    load_plans.cache_clear()
    reset_job_backend_cache()
    reset_blob_store_cache()
    reset_regen_rate_limiter_cache()
    get_notifier.cache_clear()
    get_dispatcher.cache_clear()


@pytest.fixture(autouse=True)
def staging_env(monkeypatch, tmp_path):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("JOB_BACKEND", "mock")
    monkeypatch.setenv("BLOB_BACKEND", "filesystem")
    monkeypatch.setenv("BLOB_STORAGE_PATH", str(tmp_path / "blobs"))
    monkeypatch.setenv("STYLES_FILE_PATH", str(REPO_ROOT / "config" / "styles.yaml"))
    monkeypatch.setenv("PLANS_FILE_PATH", str(REPO_ROOT / "config" / "plans.yaml"))
    monkeypatch.setenv("REGEN_RATE_LIMIT_BACKEND", "database")
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("EMAIL_ENABLED", "false")
    monkeypatch.setenv("AUTH_REQUIRED", "false")
    _clear_caches()
    reset_metrics_for_tests()
    yield
    _clear_caches()


@pytest.fixture()
def session_factory():
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def threaded_session_factory(tmp_path):
    """File-backed database: one connection per thread, with SQLite's own write locking."""

    load_models()
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'staging.sqlite'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def session(session_factory):
    with session_factory() as db_session:
        yield db_session


def fast_settings(**overrides) -> Settings:
    values = {
        "secret_key": "test-secret",
        "poll_interval_seconds": 0,
        "preview_max_polls": 3,
        "hd_max_polls": 3,
        "max_poll_errors": 2,
        "styles_file_path": str(REPO_ROOT / "config" / "styles.yaml"),
    }
    values.update(overrides)
    return Settings(**values)


def png_bytes(width: int = 64, height: int = 48, color: tuple[int, int, int] = (180, 120, 90)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def seed_account(
    db_session,
    *,
    user_id: str = "user-1",
    credits: int = 3,
    project_id: Optional[str] = "project-1",
) -> Profile:
    profile = open_credit_account(
        db_session,
        user_id=user_id,
        email=f"{user_id}@example.com",
        plan="free",
        initial_credits=credits,
        full_name="Test User",
    )
    if project_id is not None:
        db_session.add(
            Project(
                id=project_id,
                user_id=user_id,
                name="Living room",
                original_image_url="https://images.example.com/room.jpg",
                status="pending",
            )
        )
    db_session.commit()
    return profile


class FakeJobBackend:
    backend_name = "fake"

    def __init__(self) -> None:
        self.submissions: List[Dict[str, str]] = []
        self.polls: List[str] = []
        self.submit_error: Optional[str] = None
        self.scripted: Dict[str, List[object]] = {}
        self._ids = itertools.count(1)

    def submit(self, *, image_url: str, style: str, tier: str) -> JobHandle:
        if self.submit_error:
            raise JobBackendError(self.submit_error)
        job_id = f"job-{next(self._ids)}"
        self.submissions.append({"job_id": job_id, "image_url": image_url, "style": style, "tier": tier})
        return JobHandle(job_id=job_id, status=JOB_STARTING)

    def script(self, job_id: str, *outcomes: object) -> None:
        """Queue poll outcomes: JobSnapshot instances or exceptions to raise."""

        self.scripted[job_id] = list(outcomes)

    def poll(self, job_id: str) -> JobSnapshot:
        self.polls.append(job_id)
        queue = self.scripted.get(job_id)
        if not queue:
            return JobSnapshot(job_id=job_id, status=JOB_PROCESSING)
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome  # type: ignore[return-value]


class FakeBlobStore:
    backend_name = "memory"

    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.deleted: List[str] = []
        self.signed: List[tuple[str, int]] = []
        self.fail_uploads = False
        self.fail_signing = False

    def upload(self, content: bytes, path: str, content_type: str) -> str:
        if self.fail_uploads:
            raise StorageError("blob_upload_failed backend=memory")
        self.blobs[path] = content
        self.content_types[path] = content_type
        return path

    def signed_url(self, path: str, ttl_seconds: int) -> SignedUrl:
        if self.fail_signing:
            raise StorageError("blob_sign_failed backend=memory")
        self.signed.append((path, ttl_seconds))
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        return SignedUrl(url=f"memory://{path}?ttl={ttl_seconds}&n={len(self.signed)}", expires_at=expires_at)

    def delete(self, path: str) -> None:
        self.deleted.append(path)
        self.blobs.pop(path, None)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.jobs: List[ReconciliationJob] = []

    def dispatch(self, job: ReconciliationJob) -> None:
        self.jobs.append(job)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Optional[str]]] = []

    def staging_completed(self, *, email: str, name: Optional[str], project_id: str, project_name: str) -> bool:
        self.sent.append({"email": email, "name": name, "project_id": project_id, "project_name": project_name})
        return True


@pytest.fixture()
def job_backend() -> FakeJobBackend:
    return FakeJobBackend()


@pytest.fixture()
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()
