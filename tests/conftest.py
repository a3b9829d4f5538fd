"""Shared fixtures for the Task Tracker API tests"""

import itertools

import pytest

from app import create_app
from config import TestingConfig
from models import db


def auth_header(token):
    return {'Authorization': f'Bearer {token}'}


def make_app(config_class=TestingConfig):
    """建立測試用 app,每個 app 都有自己的 in-memory SQLite"""
    return create_app(config_class)


# =============================================================================
# App / Client
# =============================================================================

@pytest.fixture
def app():
    app = make_app()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


# =============================================================================
# Users
# =============================================================================

@pytest.fixture
def register(client):
    """註冊一個使用者,回傳 {user, token}"""
    counter = itertools.count(1)

    def _register(email=None, first_name=None, last_name='Tester', password='secret123', **extra):
        n = next(counter)
        payload = {
            'email': email or f'user{n}@example.com',
            'password': password,
            'confirm_password': password,
            'first_name': first_name or f'User{n}',
            'last_name': last_name,
        }
        payload.update(extra)
        response = client.post('/api/auth/register', json=payload)
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return _register


@pytest.fixture
def alice(register):
    return register(email='alice@example.com', first_name='Alice', last_name='Smith')


@pytest.fixture
def bob(register):
    return register(email='bob@example.com', first_name='Bob', last_name='Jones')
