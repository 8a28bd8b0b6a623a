"""Pytest configuration and fixtures."""

import json
import os
import tempfile
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Create a temporary directory for test paths
_test_tmp_dir = tempfile.mkdtemp(prefix="libmirror_test_")

# Set config paths BEFORE importing libmirror modules
os.environ["LIBMIRROR_CONFIG_PATH"] = str(Path(_test_tmp_dir) / "config")
os.environ["LIBMIRROR_STORAGE_PATH"] = str(Path(_test_tmp_dir) / "storage")

from libmirror.db.base import Base  # noqa: E402
import libmirror.db.models  # noqa: E402,F401


@pytest.fixture
async def db_engine(tmp_path):
    """Create a file-backed test database engine.

    A file is used rather than :memory: so every session sees the same data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    """Create a session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker):
    """Create a test database session."""
    async with session_maker() as session:
        yield session


# =============================================================================
# Library fixtures
# =============================================================================


class LibraryBuilder:
    """Writes an Eagle-style library tree to a temporary directory."""

    def __init__(self, root: Path):
        self.root = root
        (root / "images").mkdir(parents=True, exist_ok=True)

    def write_folders(self, folders: list[dict], modification_time: int) -> None:
        self._write_json(
            self.root / "metadata.json",
            {"folders": folders, "modificationTime": modification_time},
        )

    def write_mtimes(self, times: dict[str, int], total: int | None = None) -> None:
        data: dict = dict(times)
        data["all"] = len(times) if total is None else total
        self._write_json(self.root / "mtime.json", data)

    def add_item(
        self,
        item_id: str,
        name: str = "photo",
        ext: str = "jpg",
        folders: list[str] | None = None,
        modification_time: int = 0,
        with_thumbnail: bool = True,
        **extra,
    ) -> Path:
        info = self.root / "images" / f"{item_id}.info"
        info.mkdir(parents=True, exist_ok=True)
        metadata = {
            "id": item_id,
            "name": name,
            "ext": ext,
            "size": 3,
            "folders": folders or [],
            "modificationTime": modification_time,
            "noThumbnail": not with_thumbnail,
            "tags": [],
            **extra,
        }
        self._write_json(info / "metadata.json", metadata)
        (info / f"{name}.{ext}").write_bytes(b"img")
        if with_thumbnail:
            (info / f"{name}_thumbnail.png").write_bytes(b"thumb")
        return info

    @staticmethod
    def _write_json(path: Path, data: dict) -> None:
        path.write_text(json.dumps(data))


@pytest.fixture
def library_builder(tmp_path) -> LibraryBuilder:
    """Create an empty library directory."""
    return LibraryBuilder(tmp_path / "Test.library")


def pytest_sessionfinish(session, exitstatus):
    """Clean up temp directories after test session."""
    import shutil
    if Path(_test_tmp_dir).exists():
        shutil.rmtree(_test_tmp_dir, ignore_errors=True)
