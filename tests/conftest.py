import pytest

from rrc import db
from rrc.artifacts import ArtifactResolver, BuildCatalog
from rrc.events import EventBus
from rrc.health import HealthGate
from rrc.settings import Settings

from fakes import DIGEST, REPOSITORY, FakeClock, FakeRegistry


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "rrc.db")))
    db.init_db()
    return tmp_path / "rrc.db"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate(clock):
    return HealthGate(interval_s=1.0, required_streak=3, clock=clock.monotonic, sleep=clock.sleep)


@pytest.fixture
def registry():
    return FakeRegistry({f"{REPOSITORY}:abc123": DIGEST})


@pytest.fixture
def resolver(registry):
    return ArtifactResolver(BuildCatalog(REPOSITORY), registry)


@pytest.fixture
def recorded():
    """EventBus plus the list of everything published on it."""
    seen = []
    return EventBus([seen.append]), seen
