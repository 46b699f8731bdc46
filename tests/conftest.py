"""
Shared pytest fixtures: in-memory SQLite, scripted OCR, tmp storage,
a controllable clock and FastAPI TestClient.
"""
import io
import os
import tempfile
from datetime import datetime, timedelta

# Keep the app's own engine and data dirs away from the working tree
_DATA_DIR = tempfile.mkdtemp(prefix="loyalty-test-")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DATA_DIR", _DATA_DIR)
os.environ.setdefault("UPLOAD_DIR", os.path.join(_DATA_DIR, "uploads"))

import numpy as np  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from loyalty import dependencies  # noqa: E402
from loyalty.database import Base, get_db  # noqa: E402
from loyalty.models import ReceiptModel, StoreModel  # noqa: E402
from loyalty.pipeline import ReceiptValidationPipeline  # noqa: E402
from loyalty.pipeline.rules import RuleSettingsProvider, SettingsCache  # noqa: E402
from loyalty.storage import LocalImageStorage  # noqa: E402
from loyalty.main import app  # noqa: E402

# StaticPool ensures all connections share the same in-memory database
_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_Session = sessionmaker(autocommit=False, autoflush=False, bind=_ENGINE)

ALLOWED_TIN = "0003169685"
START = datetime(2026, 3, 10, 12, 0, 0)


def receipt_text(
    invoice="05507-001-0036L",
    day="2026-03-10",
    total="2,530.00",
    tin=ALLOWED_TIN,
    barcode=None,
    branch="Bole Branch",
):
    lines = ["LEWIS RETAILS", branch]
    if tin:
        lines.append(f"TIN: {tin}")
    lines += [
        f"Invoice No: {invoice}",
        f"Date: {day}",
        "Items 3",
        f"TOTAL *{total}",
    ]
    if barcode:
        lines.append(barcode)
    lines.append("Thank you")
    return "\n".join(lines)


def receipt_image(seed: int = 0, size: int = 64) -> bytes:
    """PNG of random 8x8 grey blocks; each seed hashes differently and
    scores zero on the image heuristics."""
    rng = np.random.default_rng(seed)
    blocks = rng.integers(40, 216, (8, 8)).astype(np.uint8)
    pixels = np.kron(blocks, np.ones((size // 8, size // 8), dtype=np.uint8))
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


class FakeOCR:
    """Returns queued texts (or raises queued exceptions) in order; the
    last entry repeats."""

    def __init__(self, *results):
        self.results = list(results) or [receipt_text()]
        self.calls = 0

    def script(self, *results):
        self.results = list(results)

    def extract_text(self, image_bytes: bytes) -> str:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _reset_tables():
    Base.metadata.create_all(bind=_ENGINE)
    dependencies.settings_cache.invalidate()
    yield
    Base.metadata.drop_all(bind=_ENGINE)


@pytest.fixture()
def db():
    session = _Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def ocr():
    return FakeOCR()


@pytest.fixture()
def storage(tmp_path):
    return LocalImageStorage(str(tmp_path / "uploads"))


@pytest.fixture()
def rules(db):
    return RuleSettingsProvider(db, SettingsCache())


@pytest.fixture()
def pipeline(db, ocr, storage, rules, clock):
    return ReceiptValidationPipeline(db, ocr, storage, rules, clock=clock)


@pytest.fixture()
def make_store(db):
    def _make(**overrides):
        values = dict(
            name="Lewis Bole",
            address="Bole Road",
            tin=ALLOWED_TIN,
            branch_name="Bole",
            is_active=True,
            allow_receipt_uploads=True,
        )
        values.update(overrides)
        store = StoreModel(**values)
        db.add(store)
        db.commit()
        db.refresh(store)
        return store

    return _make


@pytest.fixture()
def store(make_store):
    return make_store()


@pytest.fixture()
def client(db, ocr, storage, clock):
    def _override():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _override
    app.dependency_overrides[dependencies.get_ocr_client] = lambda: ocr
    app.dependency_overrides[dependencies.get_storage] = lambda: storage
    app.dependency_overrides[dependencies.get_clock] = lambda: clock
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def add_receipt(db, clock):
    """Insert a receipt row directly, bypassing the pipeline."""
    def _add(**overrides):
        values = dict(
            image_url="receipts/test/receipt.png",
            status="approved",
            reason="seeded",
            flags=[],
            processed_at=clock(),
        )
        values.update(overrides)
        receipt = ReceiptModel(**values)
        db.add(receipt)
        db.commit()
        db.refresh(receipt)
        return receipt

    return _add
