import pytest


@pytest.fixture
def anyio_backend() -> str:
    # connections are built on asyncio primitives
    return "asyncio"
