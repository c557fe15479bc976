import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from dynacrud.api.endpoints.entities import get_introspector
from dynacrud.core.cache import MemoryCacheStrategy
from dynacrud.core.crud.introspect import SchemaIntrospector
from dynacrud.core.database import get_db
from dynacrud.core.security import ActorContext, create_access_token
from dynacrud.main import app

# Tables every test database starts with
SCHEMA = [
    """
    CREATE TABLE posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title VARCHAR(255) NOT NULL,
        slug VARCHAR(255) NOT NULL,
        body TEXT,
        status VARCHAR(20) NOT NULL DEFAULT 'draft',
        cover VARCHAR(255),
        user_id INTEGER,
        created_at DATETIME NOT NULL,
        updated_at DATETIME NOT NULL,
        deleted_at DATETIME,
        CHECK (status IN ('draft', 'published', 'archived'))
    )
    """,
    """
    CREATE TABLE tags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name VARCHAR(50) NOT NULL
    )
    """,
    """
    CREATE TABLE post_tags (
        post_id INTEGER NOT NULL,
        tag_id INTEGER NOT NULL,
        PRIMARY KEY (post_id, tag_id),
        FOREIGN KEY (post_id) REFERENCES posts (id),
        FOREIGN KEY (tag_id) REFERENCES tags (id)
    )
    """,
    """
    CREATE TABLE products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sku VARCHAR(50) NOT NULL,
        category VARCHAR(50) NOT NULL,
        price DECIMAL(10, 2) NOT NULL,
        discount DECIMAL(10, 2),
        stock INTEGER,
        user_id INTEGER,
        approved_at DATETIME
    )
    """,
    """
    CREATE TABLE contacts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name VARCHAR(20) NOT NULL,
        email VARCHAR(255),
        website VARCHAR(255),
        age INTEGER,
        score DECIMAL(5, 2),
        birthday DATE,
        nickname VARCHAR(50),
        secret VARCHAR(50) NOT NULL
    )
    """,
    """
    CREATE TABLE orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        reference VARCHAR(50),
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
    )
    """,
]

POSTS_CONFIG = {
    "display_name": "Blog posts",
    "behaviors": {
        "timestamps": {"created_at": "created_at", "updated_at": "updated_at"},
        "sluggable": {"source": "title", "target": "slug", "unique": True},
        "soft_deletes": {"enabled": True, "column": "deleted_at"},
    },
}

CONTACT_COLUMNS = {
    "email": {"type": "email", "label": "E-mail"},
    "website": {"type": "url"},
    "age": {"min": 18, "max": 99},
    "nickname": {"minlength": 3, "maxlength": 10},
    "secret": {"hidden": True},
}

ORDERS_WORKFLOW = {
    "field": "status",
    "states": ["pending", "processing", "shipped"],
    "transitions": {
        "process": {"from": "pending", "to": "processing", "permissions": ["admin"]},
        "ship": {"from": ["processing"], "to": "shipped"},
    },
    "history": True,
}


# Fresh SQLite file per test
@pytest.fixture(scope="function")
def engine(tmp_path):
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'dynacrud_test.db'}",
        connect_args={"check_same_thread": False},
    )
    with test_engine.begin() as conn:
        for ddl in SCHEMA:
            conn.execute(text(ddl))

    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def introspector(engine):
    return SchemaIntrospector(engine, MemoryCacheStrategy())


# Write table/column comments before any session touches the database
@pytest.fixture(scope="function")
def configure(introspector):
    def _configure(table, config=None, columns=None):
        if config is not None:
            introspector.store_comment(table, json.dumps(config))
        for column, meta in (columns or {}).items():
            introspector.store_comment(table, json.dumps(meta), column)

    return _configure


@pytest.fixture(scope="function")
def posts(configure):
    configure("posts", POSTS_CONFIG, {"cover": {"type": "file"}, "title": {"label": "Title"}})
    return "posts"


# Table config for per-test variations passed as metadata overrides
@pytest.fixture
def posts_config():
    return json.loads(json.dumps(POSTS_CONFIG))


@pytest.fixture(scope="function")
def contacts(configure):
    configure("contacts", {}, CONTACT_COLUMNS)
    return "contacts"


@pytest.fixture(scope="function")
def orders(configure):
    configure("orders", {"workflow": ORDERS_WORKFLOW})
    return "orders"


# Session on the test database
@pytest.fixture(scope="function")
def db_session(engine):
    TestingSessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
    with TestingSessionLocal() as session:
        yield session
        session.rollback()


# Actors
@pytest.fixture
def admin():
    return ActorContext(id=1, role="admin", ip="127.0.0.1")


@pytest.fixture
def user():
    return ActorContext(id=2, role="user", ip="127.0.0.1")


@pytest.fixture
def guest():
    return ActorContext(ip="127.0.0.1")


# Client
@pytest.fixture(scope="function")
def client(db_session, introspector):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_introspector] = lambda: introspector

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# Token for admin
@pytest.fixture
def auth_headers_admin():
    token = create_access_token({"user_id": 1, "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


# Insert a row with plain SQL and return its id
@pytest.fixture
def insert_row(db_session):
    def _insert(table, **values):
        columns = ", ".join(values)
        params = ", ".join(f":{key}" for key in values)
        result = db_session.execute(
            text(f"INSERT INTO {table} ({columns}) VALUES ({params})"), values
        )
        db_session.commit()
        return result.lastrowid

    return _insert
