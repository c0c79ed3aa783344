"""
Shared pytest fixtures: an app on in-memory SQLite, a test client and
helpers that drive the API the way a frontend would.
"""

import pytest

from app import create_app
from config import TestingConfig
from data import seed_trackers
from models import db, Permission, Tracker
from permissions import seed_default_templates


@pytest.fixture
def app():
    app = create_app(TestingConfig)

    with app.app_context():
        seed_trackers()
        seed_default_templates()
        db.session.commit()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def auth_headers(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def register(client):
    """register('alice') -> {'id', 'headers', 'access_token', 'refresh_token'}"""
    def _register(name, password='secret-password'):
        response = client.post('/auth/register', json={
            'email': f'{name}@example.com',
            'password': password,
            'username': name,
        })
        assert response.status_code == 201, response.get_json()
        body = response.get_json()
        return {
            'id': body['user']['id'],
            'access_token': body['access_token'],
            'refresh_token': body['refresh_token'],
            'headers': auth_headers(body['access_token']),
        }
    return _register


@pytest.fixture
def owner(register):
    return register('owner')


@pytest.fixture
def project(client, owner):
    response = client.post('/projects', json={'name': 'Apollo', 'description': 'Moon'},
                           headers=owner['headers'])
    assert response.status_code == 201, response.get_json()
    return response.get_json()['project']


@pytest.fixture
def template_id(app):
    """template_id('Viewer') -> id of a global permission template"""
    def _template_id(name):
        with app.app_context():
            return Permission.query.filter_by(name=name, project_id=None).one().id
    return _template_id


@pytest.fixture
def tracker_id(app):
    with app.app_context():
        return Tracker.query.filter_by(name='Bug').one().id


@pytest.fixture
def add_member(client, owner, project, template_id):
    """add_member(user, 'Viewer') adds user to the project fixture"""
    def _add_member(user, template='Viewer', permission_id=None):
        response = client.post(
            f"/projects/{project['id']}/members",
            json={'user_id': user['id'], 'permission_id': permission_id or template_id(template)},
            headers=owner['headers']
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()['member']
    return _add_member
