# =============================================================================
# tests/conftest.py - Pytest Configuration
# =============================================================================
# Sets up the environment before the backend modules are imported and
# provides an in-memory document store, a mocked S3 client and a Flask test
# client wired to both.
# =============================================================================

import os
import re
import tempfile

# =============================================================================
# Set up test environment BEFORE any imports
# =============================================================================
# Importing storefront.app builds the module-level application from the environment.

os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017/storefront_test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")
os.environ.setdefault("STORAGE_ROOT", tempfile.mkdtemp(prefix="storefront-tests-"))
os.environ.setdefault("APP_ENV", "test")
for name in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION", "AWS_BUCKET_NAME"):
    os.environ.pop(name, None)

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from flask_jwt_extended import create_access_token

from storefront.settings import S3Settings, Settings

ADMIN_EMAIL = "admin@example.com"
CUSTOMER_EMAIL = "customer@example.com"
BUCKET = "bkt"


# =============================================================================
# In-memory document store
# =============================================================================

def _matches(document, filters):
    for key, expected in (filters or {}).items():
        actual = document.get(key)
        if isinstance(expected, dict) and "$regex" in expected:
            flags = re.IGNORECASE if "i" in expected.get("$options", "") else 0
            if actual is None or not re.search(expected["$regex"], str(actual), flags):
                return False
        elif actual != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, documents):
        self.documents = documents

    def sort(self, keys, direction=None):
        if isinstance(keys, str):
            keys = [(keys, direction or 1)]
        for field, order in reversed(list(keys)):
            self.documents.sort(key=lambda doc: doc.get(field), reverse=order < 0)
        return self

    def __iter__(self):
        return iter(self.documents)


class FakeCollection:
    """Just enough of a pymongo collection for the backend's queries."""

    def __init__(self):
        self.documents = []

    def _copy(self, document):
        return dict(document) if document is not None else None

    def find_one(self, filters=None):
        for document in self.documents:
            if _matches(document, filters):
                return self._copy(document)
        return None

    def find(self, filters=None):
        return FakeCursor([self._copy(doc) for doc in self.documents if _matches(doc, filters)])

    def insert_one(self, document):
        document.setdefault("_id", ObjectId())
        self.documents.append(dict(document))
        return SimpleNamespace(inserted_id=document["_id"])

    def insert_many(self, documents):
        ids = [self.insert_one(document).inserted_id for document in documents]
        return SimpleNamespace(inserted_ids=ids)

    def replace_one(self, filters, replacement):
        for index, document in enumerate(self.documents):
            if _matches(document, filters):
                self.documents[index] = dict(replacement)
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    def find_one_and_delete(self, filters):
        for index, document in enumerate(self.documents):
            if _matches(document, filters):
                return self.documents.pop(index)
        return None

    def count_documents(self, filters):
        return sum(1 for document in self.documents if _matches(document, filters))


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self.collections.setdefault(name, FakeCollection())


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def storage_root(tmp_path):
    (tmp_path / "uploads").mkdir()
    return tmp_path


@pytest.fixture
def settings(storage_root):
    """Settings with S3 left unconfigured."""
    return Settings(
        jwt_secret_key="test-secret-key-that-is-long-enough-for-hs256",
        storage_root=str(storage_root),
        default_admin_email=ADMIN_EMAIL,
        environment="test",
    )


@pytest.fixture
def s3_settings():
    return S3Settings(
        access_key_id="test-access-key",
        secret_access_key="test-secret-key",
        region="us-east-1",
        bucket_name=BUCKET,
    )


@pytest.fixture
def s3_client():
    return MagicMock(name="s3_client")


@pytest.fixture
def fake_db():
    db = FakeDatabase()
    db.users.insert_one({"name": "Admin", "email": ADMIN_EMAIL, "role": "admin"})
    db.users.insert_one({"name": "Customer", "email": CUSTOMER_EMAIL, "role": "standard"})
    return db


@pytest.fixture
def make_app(settings, fake_db):
    from storefront.app import create_app

    def factory(app_settings=None, s3_client=None):
        application = create_app(app_settings or settings, db=fake_db, s3_client=s3_client)
        application.config["TESTING"] = True
        return application

    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    def build(email=ADMIN_EMAIL):
        with app.app_context():
            token = create_access_token(identity=email)
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture
def insert_product(fake_db):
    def insert(**fields):
        document = {
            "name": "Test Shirt",
            "price": 25.0,
            "image": "/images/p1.jpg",
            "brand": "Nike",
            "category": "Shirts",
            "countInStock": 3,
            "description": "A shirt",
            "rating": 0,
            "numReviews": 0,
            "reviews": [],
        }
        document.update(fields)
        fake_db.products.insert_one(document)
        return document

    return insert
