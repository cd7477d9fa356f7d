"""
Pytest fixtures for tillcore tests.

Every test gets its own in-memory database, initialized through the same
sequencer the application uses at startup.
"""

import pytest

from tillcore import create_app
from tillcore.extensions import db
from tillcore.services import products_service
from tillcore.services.init_service import get_sequencer

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'PRODUCT_CACHE_PRELOAD_CATEGORIES': ['electronics', 'food'],
}


@pytest.fixture(scope='function')
def fresh_app():
    """Application whose storage has not been initialized yet."""
    app = create_app(dict(TEST_CONFIG))
    with app.app_context():
        yield app
        db.session.remove()
        db.engine.dispose()


@pytest.fixture(scope='function')
def app(fresh_app):
    """Initialized application with an empty catalog."""
    get_sequencer().initialize()
    return fresh_app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def make_product(app):
    """Factory creating catalog products with sensible defaults."""
    def _make(**overrides):
        data = {
            'name': 'Flat White',
            'category': 'drinks',
            'price': 10.0,
            'stock_quantity': 5,
        }
        data.update(overrides)
        return products_service.create_product(data)
    return _make


@pytest.fixture(scope='function')
def sale_products(make_product):
    """P1 at 10.00 and P2 at 5.00 with a +1.00 Large size."""
    p1 = make_product(id='P1', name='Cappuccino', category='drinks', price=10.0, stock_quantity=20)
    p2 = make_product(
        id='P2',
        name='Muffin',
        category='food',
        price=5.0,
        stock_quantity=12,
        variants={'sizes': [{'name': 'Regular', 'price': 0}, {'name': 'Large', 'price': 1}]},
    )
    return p1, p2
