import pytest_asyncio

from shared.database import close_db, init_db
from shared.database.config import SQLITE_MEMORY_URL, build_tortoise_config
from tests.shared_data import configure_test_logging


configure_test_logging()


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory sqlite database for one test."""
    await init_db(build_tortoise_config(SQLITE_MEMORY_URL), generate_schemas=True)
    try:
        yield
    finally:
        await close_db()
