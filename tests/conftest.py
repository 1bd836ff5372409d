import itertools
from types import SimpleNamespace

import pytest

from app import create_app
from utilities.database import db, Key, KeyBundle, KeyBundleKey


@pytest.fixture(scope="session")
def log_file(tmp_path_factory):
    return str(tmp_path_factory.mktemp("logs") / "keys_service.log")


@pytest.fixture
def app(tmp_path, log_file, monkeypatch):
    monkeypatch.setenv("ENV", "testing")
    db_path = tmp_path / "keys_test.db"

    application = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path.as_posix()}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30, "check_same_thread": False}},
            "DATA_DIR": str(tmp_path),
            "LOG_FILE": log_file,
            "AUTO_CREATE_SCHEMA": False,
            "RATELIMIT_ENABLED": False,
        }
    )

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    test_client = app.test_client()
    test_client.environ_base["HTTP_X_ACTOR"] = "tester"
    return test_client


@pytest.fixture
def anonymous_client(app):
    return app.test_client()


@pytest.fixture
def make_key(app):
    counter = itertools.count(1)

    def _make(key_name=None, **overrides):
        number = next(counter)
        key = Key(
            key_name=key_name or f"Nyckel {number}",
            key_type=overrides.pop("key_type", "LGH"),
            rental_object_code=overrides.pop("rental_object_code", f"705-011-03-{number:04d}"),
            disposed=overrides.pop("disposed", False),
            **overrides,
        )
        db.session.add(key)
        db.session.commit()
        return key.id

    return _make


@pytest.fixture
def sample_keys(make_key):
    """Three keys named like the A/B/C reservation scenario."""
    return SimpleNamespace(
        a=make_key("Key A", rental_object_code="OBJ-100"),
        b=make_key("Key B", rental_object_code="OBJ-100"),
        c=make_key("Key C", rental_object_code="OBJ-200"),
    )


@pytest.fixture
def make_bundle(app):
    def _make(name, key_ids, description=None):
        bundle = KeyBundle(name=name, description=description)
        bundle.key_links = [KeyBundleKey(key_id=key_id) for key_id in key_ids]
        db.session.add(bundle)
        db.session.commit()
        return bundle.id

    return _make
