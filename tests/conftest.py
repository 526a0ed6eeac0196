"""Pytest configuration and shared fixtures for all tests."""

import itertools
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before config.py / logger.py are imported
os.environ.setdefault("SECRET_KEY", "test_secret_key_for_testing_only")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FLASK_ENV", "testing")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="pawnchain-logs-"))

# Project root on PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from app import create_app
from config import TestConfig
from extensions import db
from models import User, UserStatus
from triangle.atomic import run_atomically
from triangle.ledger import LedgerStateMachine
from triangle.placement import PlacementResolver
from triangle.plans import PlanCatalog

PASSWORD = "secret123"


@pytest.fixture
def app(tmp_path):
    """Application bound to a fresh SQLite file with the test plan catalog loaded."""
    config = type(
        "EngineTestConfig",
        (TestConfig,),
        {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'engine.db'}"},
    )
    application = create_app(config)

    with application.app_context():
        db.create_all()
        PlanCatalog.seed_defaults()
        db.session.commit()

    yield application

    with application.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def app_ctx(app):
    """Pushed application context for engine-level tests."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app_ctx):
    """Register a member through the engine; optionally confirm the deposit."""
    counter = itertools.count(1)

    def _make(plan="King", referrer_code=None, confirm=False, username=None):
        n = next(counter)
        username = username or f"member{n:02d}"
        user, placement = run_atomically(
            PlacementResolver.register,
            username, PASSWORD, f"TWallet{username}", plan, referrer_code,
        )
        if confirm:
            run_atomically(LedgerStateMachine.confirm, placement.deposit_transaction.id)
        return user, placement

    return _make


@pytest.fixture
def fill_formation(make_user):
    """Register `count` members without referrers and confirm each deposit."""

    def _fill(plan="King", count=15, confirm=True):
        return [make_user(plan=plan, confirm=confirm) for _ in range(count)]

    return _fill


@pytest.fixture
def admin(app_ctx):
    user = User(
        username="admin",
        wallet_address="TWalletAdmin",
        plan_name="Knight",
        referral_code="ADMIN0001",
        status=UserStatus.CONFIRMED.value,
        is_admin=True,
    )
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.commit()
    return user
