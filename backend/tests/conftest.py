import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.exceptions import AdapterPermanentError, AdapterRetryableError  # noqa: E402
from core.store import MemoryStore  # noqa: E402

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

USERS = [
    {"id": "usr_1", "uid": "u1", "username": "alice", "display_name": "Alice", "email": "alice@example.com", "phone": "+15550000001"},
    {"id": "usr_2", "uid": "u2", "username": "bob", "display_name": "Bob", "email": "bob@example.com"},
    {"id": "usr_3", "uid": "u3", "username": "carol", "display_name": None, "email": None},
    {"id": "usr_4", "uid": "u4", "username": "dave", "is_active": False},
]


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedAdapter:
    """
    Adaptateur de test : chaque appel consomme le prochain résultat du script
    ("ok", "retry", "fail" ou une exception) ; "ok" une fois le script épuisé.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def _next(self):
        outcome = self.script.pop(0) if self.script else "ok"
        if outcome == "retry":
            raise AdapterRetryableError("service indisponible")
        if outcome == "fail":
            raise AdapterPermanentError("destinataire refusé")
        if isinstance(outcome, BaseException):
            raise outcome

    async def send(self, *args):
        self.calls.append(args)
        self._next()

    async def publish(self, channel, event, payload):
        self.calls.append((channel, event, payload))
        self._next()


class RecordingEvents:
    """Remplace le dispatcher : mémorise les événements émis."""

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]


async def seed_users(store, users=USERS):
    for user in users:
        await store.insert("users", dict(user))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
async def seeded_store(store):
    await seed_users(store)
    return store


@pytest.fixture
def adapters():
    return {"sms": ScriptedAdapter(), "email": ScriptedAdapter(), "push": ScriptedAdapter()}
