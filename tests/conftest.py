import os
import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure project root (containing fhir_records/) is importable when tests are run from any cwd.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep the module-level engine off disk; tests bind their own in-memory database.
os.environ.setdefault("FHIR_RECORDS_DB_URL", "sqlite://")
os.environ.setdefault("FHIR_RECORDS_SEED_DEMO_DATA", "false")

from fhir_records.db import make_engine, seed_demo_data  # noqa: E402
from fhir_records.models import Base  # noqa: E402


@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    """Session over the demo data set; nothing is committed between tests."""
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with Session() as s:
        seed_demo_data(s)
        s.commit()
        yield s
