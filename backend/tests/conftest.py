"""
Pytest fixtures for stockledger tests.

Provides an in-memory database, a per-test clean session, and a few products.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.services import product_service


ACTOR_ID = 7


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETRY_BACKOFF_BASE': 0,
        'LOG_JSON': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (Core deletes bypass the append-only hooks)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.expunge_all()


@pytest.fixture(scope='function')
def actor_id():
    return ACTOR_ID


@pytest.fixture(scope='function')
def product_a(db_session):
    """Product A: 100 units at 10.00."""
    return product_service.create_product(
        db_session, code="A", name="Product A", quantity_on_hand=100, unit_cost_cents=1000,
    )


@pytest.fixture(scope='function')
def product_b(db_session):
    """Product B: 50 units at 5.00."""
    return product_service.create_product(
        db_session, code="B", name="Product B", quantity_on_hand=50, unit_cost_cents=500,
    )
