"""Application Tests

Health check, CLI commands, generic error responses, security headers and
configuration checks.
"""

import pytest

from config import Config, ProductionConfig, TestingConfig
from conftest import auth_header
from models import User


class TestHealth:

    def test_health(self, client):
        response = client.get('/api/health')

        assert response.status_code == 200
        body = response.get_json()
        assert body['status'] == 'healthy'
        assert body['database'] == 'connected'
        assert body['timestamp']

    def test_health_reports_database_failure(self, client, monkeypatch):
        def broken_query(*args, **kwargs):
            raise RuntimeError('database is gone')

        monkeypatch.setattr('app.text', broken_query)
        response = client.get('/api/health')

        assert response.status_code == 503
        assert response.get_json()['status'] == 'unhealthy'


class TestErrors:

    def test_unknown_route_is_json_404(self, client):
        response = client.get('/api/nothing-here')

        assert response.status_code == 404
        assert response.get_json()['error'] == 'not_found'

    def test_method_not_allowed(self, client):
        response = client.put('/api/tasks')

        assert response.status_code == 405
        assert response.get_json()['error'] == 'method_not_allowed'

    def test_unexpected_error_hides_details(self, app, client, alice, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError('secret database detail')

        monkeypatch.setattr(app.extensions['storage'], 'list_tasks', explode)

        response = client.get('/api/tasks', headers=auth_header(alice['token']))

        assert response.status_code == 500
        assert 'secret database detail' not in response.get_data(as_text=True)

    def test_security_headers(self, client):
        response = client.get('/api/health')

        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['X-Frame-Options'] == 'DENY'


class TestCommands:

    def test_make_admin(self, app, alice):
        result = app.test_cli_runner().invoke(args=['make-admin', 'alice@example.com'])

        assert result.exit_code == 0
        with app.app_context():
            assert User.query.filter_by(email='alice@example.com').one().role == 'admin'

    def test_make_admin_unknown_user(self, app):
        result = app.test_cli_runner().invoke(args=['make-admin', 'ghost@example.com'])

        assert result.exit_code != 0
        assert 'User not found' in result.output

    def test_init_db(self, app):
        result = app.test_cli_runner().invoke(args=['init-db'])

        assert result.exit_code == 0
        assert 'Database tables created' in result.output


class TestConfig:

    def test_testing_config_is_valid(self):
        TestingConfig.validate()

    def test_rejects_unknown_authorization_mode(self):
        class BadConfig(TestingConfig):
            AUTHORIZATION_MODE = 'everyone'

        with pytest.raises(ValueError):
            BadConfig.validate()

    def test_production_requires_secrets(self, monkeypatch):
        class StrictConfig(ProductionConfig):
            ENV = 'production'
            SECRET_KEY = Config.SECRET_KEY

        for key in ('SECRET_KEY', 'JWT_SECRET_KEY', 'DATABASE_URL'):
            monkeypatch.delenv(key, raising=False)

        with pytest.raises(ValueError):
            StrictConfig.validate()
