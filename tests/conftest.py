"""Shared fixtures: a throwaway SQLite database, a stub vision client and seeded users."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
import pytest
from jose import jwt

from modqueue.core.config import Settings
from modqueue.core.db import Database
from modqueue.main import create_app, init_app_state
from modqueue.modules.auth.models import User, UserRole
from modqueue.modules.creators.models import CreatorModel
from modqueue.modules.moderation import store
from modqueue.modules.moderation.models import ModelAnchor
from modqueue.modules.moderation.service import ModerationService
from modqueue.modules.moderation.vision import VisionResult
from modqueue.modules.worker.runner import JobWorker

CRON_SECRET = "test-cron-secret"


def clean_result(**overrides) -> VisionResult:
    """A result that auto-approves once the model has enough anchors."""
    values = dict(
        flags=[],
        confidence=0.95,
        detected_faces=1,
        face_consistency_score=90,
        celebrity_risk_score=5,
        real_person_risk_score=10,
        deepfake_risk_score=5,
        minor_risk_score=2,
        staff_summary="Consistent with anchors.",
        model="stub-vision",
    )
    values.update(overrides)
    return VisionResult(**values)


class StubVisionClient:
    """Stands in for the vision API. Records every call."""

    def __init__(self, result: Optional[VisionResult] = None):
        self.result = result or clean_result()
        self.error: Optional[Exception] = None
        self.delay: float = 0
        self.on_analyze: Optional[Callable[[str], Awaitable[None]]] = None
        self.calls: List[tuple] = []

    async def analyze(self, image_url: str, anchor_urls: Sequence[str] = ()) -> VisionResult:
        self.calls.append((image_url, list(anchor_urls)))
        if self.on_analyze:
            await self.on_analyze(image_url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'modqueue.db'}",
        SECRET_KEY="test-secret-key",
        CRON_SECRET=CRON_SECRET,
        ANTHROPIC_API_KEY=None,
        WORKER_MAX_JOBS=5,
        WORKER_JOB_TIMEOUT_SECONDS=5.0,
        WORKER_MAX_ATTEMPTS=3,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.async_database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def vision() -> StubVisionClient:
    return StubVisionClient()


@pytest.fixture
def service(database, vision, settings) -> ModerationService:
    return ModerationService(database, vision, settings)


@pytest.fixture
def worker(database, service, settings) -> JobWorker:
    return JobWorker(database, service, settings, worker_id="worker-test-a")


async def _add_user(database: Database, email: str, role: UserRole, is_active: bool = True) -> User:
    async with database.session() as db:
        user = User(email=email, full_name=email.split("@")[0], role=role, is_active=is_active)
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
async def admin(database) -> User:
    return await _add_user(database, "admin@example.com", UserRole.ADMIN)


@pytest.fixture
async def moderator(database) -> User:
    return await _add_user(database, "mod@example.com", UserRole.MODERATOR)


@pytest.fixture
async def creator(database) -> User:
    return await _add_user(database, "creator@example.com", UserRole.CREATOR)


@pytest.fixture
async def other_creator(database) -> User:
    return await _add_user(database, "other@example.com", UserRole.CREATOR)


@pytest.fixture
async def model(database, creator) -> CreatorModel:
    async with database.session() as db:
        persona = CreatorModel(creator_id=creator.id, display_name="Nova")
        db.add(persona)
        await db.commit()
        return persona


@pytest.fixture
def add_anchors(database, admin):
    async def _add(model_id, count: int = 3) -> List[ModelAnchor]:
        anchors = []
        async with database.session() as db:
            for i in range(count):
                anchors.append(await store.create_anchor(
                    db,
                    model_id=model_id,
                    storage_key=f"anchors/{model_id}/{i}.jpg",
                    storage_url=f"https://cdn.example.com/anchors/{model_id}/{i}.jpg",
                    added_by=admin.id,
                ))
            await db.commit()
        return anchors
    return _add


@pytest.fixture
def make_scan(service, model, creator):
    counter = {"n": 0}

    async def _make(priority: int = 5, target_type: str = "model_gallery", model_id="default") -> str:
        counter["n"] += 1
        n = counter["n"]
        return await service.create_scan(
            target_type=target_type,
            target_id=f"img-{n}",
            model_id=model.id if model_id == "default" else model_id,
            creator_id=creator.id,
            storage_key=f"uploads/img-{n}.jpg",
            storage_url=f"https://cdn.example.com/uploads/img-{n}.jpg",
            priority=priority,
        )
    return _make


def make_token(user: User, settings: Settings, expires_in: timedelta = timedelta(minutes=30)) -> str:
    payload = {"sub": str(user.id), "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def auth_headers(user: User, settings: Settings) -> dict:
    return {"Authorization": f"Bearer {make_token(user, settings)}"}


@pytest.fixture
def app(settings, database, vision):
    application = create_app(settings, vision_client=vision, database=database)
    # Same event loop as the database fixture, so wire state directly instead of via lifespan.
    init_app_state(application, settings, database, vision)
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
