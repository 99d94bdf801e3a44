import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from prizewheel import cache
from prizewheel.config import settings
from prizewheel.db import create_tables, get_db, get_session_factory, make_engine
from prizewheel.main import app
from prizewheel.models import Prize, SpinCode
from prizewheel.security import make_admin_token


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "resend_api_key", None)
    monkeypatch.setattr(settings, "admin_email", None)
    monkeypatch.setattr(settings, "admin_password", "letmein")
    monkeypatch.setattr(settings, "admin_password_hash", "")
    monkeypatch.setattr(settings, "admin_reset_password", "")
    monkeypatch.setattr(settings, "email_send_interval_seconds", 0)
    monkeypatch.setattr(settings, "rate_limit_max_attempts", 5)
    monkeypatch.setattr(settings, "rate_limit_window_minutes", 15)
    monkeypatch.setattr(settings, "spin_max_retries", 1)
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'wheel.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_admin_token()}"}


async def add_code(session_factory, code, *, name="Dana", email=None, is_used=False):
    async with session_factory() as s:
        c = SpinCode(code=code, name=name, email=email or f"{code.lower()}@example.com", is_used=is_used)
        s.add(c)
        await s.commit()
        return c.id


async def add_prize(session_factory, title, *, remaining, weight, total=None, image_url=None):
    async with session_factory() as s:
        p = Prize(
            title=title,
            description=f"{title} description",
            image_url=image_url,
            quantity_total=total if total is not None else max(remaining, 1),
            quantity_remaining=remaining,
            weight=weight,
        )
        s.add(p)
        await s.commit()
        return p.id


async def fetch(session_factory, model, pk):
    async with session_factory() as s:
        return await s.get(model, pk)
