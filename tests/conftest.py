import pytest
from httpx import ASGITransport, AsyncClient

from imagecredit.main import app


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(autouse=True)
def _reset_dependency_overrides():
    """Never let one test's dependency overrides leak into the next."""
    yield
    app.dependency_overrides.clear()
