"""
App factory wiring: health check, JSON error pages and config validation.
"""

import pytest

from config import Config, DEV_SECRET_KEY
from models import Permission, Tracker


def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.get_json()['database'] == 'connected'


def test_index_lists_version(client):
    body = client.get('/').get_json()
    assert body['version'] == '1.0.0'


def test_unknown_route_is_json(client):
    response = client.get('/does-not-exist')

    assert response.status_code == 404
    assert response.get_json()['error'] == 'not_found'


def test_wrong_method_is_json(client):
    response = client.put('/health')

    assert response.status_code == 405
    assert response.get_json()['error'] == 'method_not_allowed'


def test_security_headers(client):
    response = client.get('/health')

    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.headers['X-Frame-Options'] == 'DENY'


class TestConfigValidation:

    def test_development_is_lenient(self, monkeypatch):
        class Lenient(Config):
            ENV = 'development'

        monkeypatch.delenv('DATABASE_URL', raising=False)
        Lenient.validate()

    def test_production_requires_env(self, monkeypatch):
        class Strict(Config):
            ENV = 'production'

        monkeypatch.delenv('DATABASE_URL', raising=False)
        with pytest.raises(ValueError, match='DATABASE_URL'):
            Strict.validate()

    def test_production_rejects_dev_secret(self, monkeypatch):
        class Strict(Config):
            ENV = 'production'
            SECRET_KEY = DEV_SECRET_KEY

        for key in ('SECRET_KEY', 'JWT_SECRET_KEY', 'DATABASE_URL'):
            monkeypatch.setenv(key, 'set')

        with pytest.raises(ValueError, match='SECRET_KEY'):
            Strict.validate()


def test_init_db_is_idempotent(app):
    runner = app.test_cli_runner()
    assert 'Database initialized' in runner.invoke(args=['init-db']).output
    assert 'Database initialized' in runner.invoke(args=['init-db']).output

    with app.app_context():
        assert Tracker.query.count() == 3
        assert Permission.query.filter_by(project_id=None).count() == 2
