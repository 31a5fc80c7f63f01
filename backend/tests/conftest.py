"""
Pytest configuration and shared test helpers for backend tests.

`fake_db` stands in for the Motor database with an in-memory store. Each
operation runs without awaiting between its match and its write, so a
conditional update is atomic relative to other coroutines, the same guarantee
MongoDB gives a single-document update.
"""
import asyncio
import copy
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

# Skip scheduler start-up when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from fastapi.testclient import TestClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from models import PrincipalKind, UserStatus
from server import app
from services.principal_service import Principal
from utils.rate_limiter import rate_limiter


# ============================================================================
# In-memory Mongo stand-in
# ============================================================================

UNIQUE_FIELDS = {
    "companies": ("company_id", "company_code"),
    "users": ("user_id", "email", "phone_number"),
    "associate_users": ("user_id", "email", "phone_number"),
    "admins": ("admin_id", "email", "singleton"),
    "projects": ("project_id", "project_code"),
    "master_statuses": ("status_id",),
    "customers": ("customer_id", "phone_number", "email"),
    "follow_ups": ("customer_id",),
    "notes": ("customer_id",),
    "customer_links": ("code",),
    "associate_links": ("code",),
}


def _get_path(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$gt" and not (value is not None and value > arg):
                return False
            if op == "$lte" and not (value is not None and value <= arg):
                return False
            if op == "$ne":
                if isinstance(value, list):
                    if arg in value:
                        return False
                elif value == arg:
                    return False
            if op == "$exists" and (value is not None) != bool(arg):
                return False
            if op == "$in":
                candidates = value if isinstance(value, list) else [value]
                if not any(c in arg for c in candidates):
                    return False
            if op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                if not isinstance(value, str) or not re.search(arg, value, flags):
                    return False
        return True
    if isinstance(value, list) and not isinstance(condition, list):
        return condition in value
    return value == condition


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif not _matches_condition(_get_path(doc, key), condition):
            return False
    return True


def project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = {k for k, v in projection.items() if v and k != "_id"}
    if include:
        kept = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            kept["_id"] = doc["_id"]
        return kept
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def apply_update(doc, update, inserting=False):
    for key, value in update.get("$set", {}).items():
        doc[key] = copy.deepcopy(value)
    if inserting:
        for key, value in update.get("$setOnInsert", {}).items():
            doc[key] = copy.deepcopy(value)
    for key, value in update.get("$addToSet", {}).items():
        items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
        current = doc.setdefault(key, [])
        for item in items:
            if item not in current:
                current.append(item)
    for key, value in update.get("$push", {}).items():
        doc.setdefault(key, []).append(copy.deepcopy(value))


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction == -1)
        return self

    def skip(self, n):
        self._docs = self._docs[n:]
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.unique = UNIQUE_FIELDS.get(name, ())

    def _check_unique(self, doc, ignore=None):
        for field in self.unique:
            value = doc.get(field)
            if value is None:
                continue
            for other in self.docs:
                if other is not ignore and other.get(field) == value and not other.get("deleted"):
                    raise DuplicateKeyError(f"E11000 duplicate key error index: {field}_1")

    async def insert_one(self, doc):
        await asyncio.sleep(0)
        self._check_unique(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None, sort=None):
        await asyncio.sleep(0)
        found = [d for d in self.docs if matches(d, query)]
        if sort:
            key, direction = sort[0]
            found.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction == -1)
        return project(found[0], projection) if found else None

    def find(self, query=None, projection=None):
        return FakeCursor([project(d, projection) for d in self.docs if matches(d, query)])

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, query))

    async def find_one_and_update(self, query, update, projection=None, return_document=ReturnDocument.BEFORE, upsert=False):
        # Yield first so concurrent callers interleave, then match and write atomically.
        await asyncio.sleep(0)
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                apply_update(doc, update)
                self._check_unique(doc, ignore=doc)
                return project(doc if return_document == ReturnDocument.AFTER else before, projection)
        return None

    async def update_one(self, query, update, upsert=False):
        await asyncio.sleep(0)
        for doc in self.docs:
            if matches(doc, query):
                apply_update(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=1)
        if upsert:
            doc = {k: v for k, v in query.items() if not k.startswith("$")}
            apply_update(doc, update, inserting=True)
            self._check_unique(doc)
            doc["_id"] = uuid.uuid4().hex
            self.docs.append(doc)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def delete_one(self, query):
        await asyncio.sleep(0)
        for doc in self.docs:
            if matches(doc, query):
                self.docs.remove(doc)
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query):
        await asyncio.sleep(0)
        doomed = [d for d in self.docs if matches(d, query)]
        for doc in doomed:
            self.docs.remove(doc)
        return SimpleNamespace(deleted_count=len(doomed))

    def aggregate(self, pipeline):
        docs = [copy.deepcopy(d) for d in self.docs]
        for stage in pipeline:
            if "$match" in stage:
                docs = [d for d in docs if matches(d, stage["$match"])]
            elif "$group" in stage:
                key = stage["$group"]["_id"][1:]
                groups = {}
                for d in docs:
                    groups[d.get(key)] = groups.get(d.get(key), 0) + 1
                docs = [{"_id": k, "count": v} for k, v in groups.items()]
        return FakeCursor(docs)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest.fixture
def fake_db():
    db = FakeDatabase()
    with patch("database.database.get_db", return_value=db):
        yield db


# ============================================================================
# Principals and seed data
# ============================================================================

def make_principal(
    role="agent",
    principal_id=None,
    company_id="company-1",
    status=UserStatus.ACTIVE.value,
    name=None,
    kind=None,
):
    principal_id = principal_id or f"{role}-{uuid.uuid4().hex[:6]}"
    if role == "admin":
        kind = PrincipalKind.ADMIN
        company_id = None
    return Principal(
        id=principal_id,
        name=name or principal_id,
        email=f"{principal_id}@example.com",
        role=role,
        kind=kind or PrincipalKind.USER,
        status=status,
        company_id=company_id,
        company_name="Acme Realty" if company_id else None,
    )


def user_doc(user_id, role="agent", company_id="company-1", status="active", full_name=None, phone=None):
    return {
        "user_id": user_id,
        "full_name": full_name or user_id,
        "email": f"{user_id}@example.com",
        "phone_number": phone or f"9{abs(hash(user_id)) % 10 ** 9:09d}",
        "location": "Pune",
        "company_id": company_id,
        "company_name": "Acme Realty",
        "role": role,
        "status": status,
        "password_hash": "x",
        "created_at": datetime.now(timezone.utc),
    }


@pytest.fixture
def seeded_db(fake_db):
    """One company with two active agents, one inactive agent and a channel partner."""
    now = datetime.now(timezone.utc)
    fake_db.companies.docs.append({
        "company_id": "company-1", "company_name": "Acme Realty", "company_code": "C-101",
        "deleted": False, "created_at": now,
    })
    fake_db.companies.docs.append({
        "company_id": "company-2", "company_name": "Other Homes", "company_code": "C-102",
        "deleted": False, "created_at": now,
    })
    fake_db.projects.docs.append({
        "project_id": "project-1", "project_title": "Lake View", "location": "Pune",
        "project_code": "P-101", "created_at": now,
    })
    fake_db.users.docs.extend([
        user_doc("agent-a", full_name="Asha"),
        user_doc("agent-b", full_name="Bala"),
        user_doc("agent-off", status="inactive"),
        user_doc("agent-other", company_id="company-2"),
        user_doc("cp-1", role="channel_partner", full_name="Chetan"),
    ])
    fake_db.master_statuses.docs.extend([
        {"status_id": "st-new", "name": "New", "deleted": False, "created_at": now},
        {"status_id": "st-contacted", "name": "Contacted", "deleted": False, "created_at": now},
        {"status_id": "st-old", "name": "Retired", "deleted": True, "created_at": now},
    ])
    return fake_db


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.attempts.clear()
    yield
    rate_limiter.attempts.clear()


# Shared TestClient fixture so tests can use in-process requests without a running server.
@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)
