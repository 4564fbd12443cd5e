"""
Shared fixtures for the MediMind backend tests.

The app talks to MongoDB through Motor and to two AI providers. Tests swap
`server.db` for an in-memory collection store and replace the AI helpers,
so nothing here needs a network or a database.
"""
import copy
import itertools
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from jose import jwt

import server

TEST_JWT_SECRET = "test-identity-secret"


def _matches(doc, query):
    return all(doc.get(key) == value for key, value in query.items())


def _project(doc, projection):
    result = copy.deepcopy(doc)
    if projection and projection.get("_id") == 0:
        result.pop("_id", None)
    return result


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d[key], reverse=direction == -1)
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    """Just enough of AsyncIOMotorCollection for the routes under test."""

    _ids = itertools.count(1)

    def __init__(self):
        self.docs = []

    async def insert_one(self, doc):
        # pymongo adds _id to the caller's dict, the routes must strip it.
        doc["_id"] = f"oid_{next(self._ids)}"
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    def find(self, query=None, projection=None):
        query = query or {}
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query)])

    async def find_one(self, query=None, projection=None):
        for doc in self.docs:
            if _matches(doc, query or {}):
                return _project(doc, projection)
        return None

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            new_doc = {**query, **update.get("$set", {}), "_id": f"oid_{next(self._ids)}"}
            self.docs.append(new_doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def delete_one(self, query):
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query):
        keep = [d for d in self.docs if not _matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self._collections.setdefault(name, FakeCollection())

    def __getitem__(self, name):
        return getattr(self, name)


@pytest.fixture
def fake_db(monkeypatch):
    database = FakeDatabase()
    monkeypatch.setattr(server, "db", database)
    return database


@pytest.fixture(autouse=True)
def identity_settings(monkeypatch):
    monkeypatch.setattr(server, "AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(server, "AUTH_JWT_ALGORITHM", "HS256")
    monkeypatch.setattr(server, "AUTH_JWT_AUDIENCE", "")
    monkeypatch.setattr(server, "AUTH_JWT_ISSUER", "")
    monkeypatch.setattr(server, "AUTH_JWKS_URL", "")
    monkeypatch.setattr(server, "identity_jwks", None)
    monkeypatch.setattr(server, "identity_jwks_fetched_at", 0.0)


def make_token(uid="user_alice", secret=TEST_JWT_SECRET, headers=None, **claims):
    payload = {"sub": uid, "email": f"{uid}@example.com", "name": uid.replace("user_", "").title()}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256", headers=headers)


@pytest.fixture
def api_client(fake_db):
    """TestClient without credentials"""
    return TestClient(server.app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def ai_calls(monkeypatch):
    """
    Replace both downstream AI calls with recorders.
    Set ai_calls.chat_reply / ai_calls.vision_reply to a string, or to an
    exception instance to make the call fail.
    """
    calls = SimpleNamespace(
        chat=[],
        vision=[],
        chat_reply="Rest, drink fluids and see a doctor if the fever lasts.",
        vision_reply="The image shows a mild rash."
    )

    async def fake_complete_chat(messages, **options):
        calls.chat.append({"messages": messages, "options": options})
        if isinstance(calls.chat_reply, Exception):
            raise calls.chat_reply
        return calls.chat_reply

    async def fake_vision(image_data, mime_type, prompt, transport=None):
        calls.vision.append({"image_data": image_data, "mime_type": mime_type, "prompt": prompt})
        if isinstance(calls.vision_reply, Exception):
            raise calls.vision_reply
        return calls.vision_reply

    monkeypatch.setattr(server, "complete_chat", fake_complete_chat)
    monkeypatch.setattr(server, "request_vision_analysis", fake_vision)
    return calls
