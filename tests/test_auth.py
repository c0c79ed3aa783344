"""
Tests for registration, login, token handling and the profile endpoints.
"""

from datetime import datetime, timedelta

from models import db, TokenBlocklist
from tests.conftest import auth_headers


class TestRegisterAndLogin:

    def test_register_returns_tokens(self, client):
        response = client.post('/auth/register', json={
            'email': 'ada@example.com',
            'password': 'long-enough',
            'username': 'ada'
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body['user']['email'] == 'ada@example.com'
        assert body['access_token']
        assert body['refresh_token']

    def test_register_rejects_duplicate_email(self, client, register):
        register('ada')
        response = client.post('/auth/register', json={
            'email': 'ada@example.com',
            'password': 'long-enough',
            'username': 'other'
        })
        assert response.status_code == 409

    def test_register_validates_input(self, client):
        response = client.post('/auth/register', json={
            'email': 'not-an-email',
            'password': 'short',
            'username': 'a'
        })

        assert response.status_code == 400
        details = response.get_json()['details']
        assert set(details) == {'email', 'password', 'username'}

    def test_register_requires_json(self, client):
        response = client.post('/auth/register', data='plain text')
        assert response.status_code == 400

    def test_login(self, client, register):
        register('ada', password='correct-horse')

        response = client.post('/auth/login', json={
            'email': 'ada@example.com',
            'password': 'correct-horse'
        })
        assert response.status_code == 200
        assert response.get_json()['user']['username'] == 'ada'

    def test_login_wrong_password(self, client, register):
        register('ada', password='correct-horse')

        response = client.post('/auth/login', json={
            'email': 'ada@example.com',
            'password': 'battery-staple'
        })
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid credentials'

    def test_login_unknown_email_matches_wrong_password(self, client):
        response = client.post('/auth/login', json={
            'email': 'nobody@example.com',
            'password': 'whatever-it-is'
        })
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid credentials'


class TestTokens:

    def test_protected_route_requires_token(self, client):
        response = client.get('/auth/me')

        assert response.status_code == 401
        assert response.get_json()['error'] == 'authorization_required'

    def test_invalid_token(self, client):
        response = client.get('/auth/me', headers=auth_headers('not.a.token'))

        assert response.status_code == 401
        assert response.get_json()['error'] == 'invalid_token'

    def test_refresh_issues_access_token(self, client, register):
        user = register('ada')

        response = client.post('/auth/refresh', headers=auth_headers(user['refresh_token']))
        assert response.status_code == 200

        new_token = response.get_json()['access_token']
        assert client.get('/auth/me', headers=auth_headers(new_token)).status_code == 200

    def test_access_token_cannot_refresh(self, client, register):
        user = register('ada')
        response = client.post('/auth/refresh', headers=user['headers'])
        assert response.status_code == 401

    def test_logout_revokes_token(self, client, register):
        user = register('ada')

        assert client.post('/auth/logout', headers=user['headers']).status_code == 200

        response = client.get('/auth/me', headers=user['headers'])
        assert response.status_code == 401
        assert response.get_json()['error'] == 'token_revoked'

    def test_logout_refresh_token(self, client, register):
        user = register('ada')
        refresh_headers = auth_headers(user['refresh_token'])

        assert client.post('/auth/logout', headers=refresh_headers).status_code == 200
        assert client.post('/auth/refresh', headers=refresh_headers).status_code == 401


class TestProfile:

    def test_me_counts_projects(self, client, owner, register, add_member):
        guest = register('guest')
        add_member(guest)

        owner_me = client.get('/auth/me', headers=owner['headers']).get_json()
        guest_me = client.get('/auth/me', headers=guest['headers']).get_json()

        assert owner_me['total_projects'] == 1
        assert owner_me['total_contributed_projects'] == 0
        assert guest_me['total_projects'] == 0
        assert guest_me['total_contributed_projects'] == 1

    def test_update_username(self, client, register):
        user = register('ada')

        response = client.patch('/auth/me', json={'username': 'lovelace'}, headers=user['headers'])
        assert response.status_code == 200
        assert response.get_json()['user']['username'] == 'lovelace'

    def test_change_password(self, client, register):
        user = register('ada', password='first-password')

        response = client.post('/auth/change-password', json={
            'current_password': 'wrong-password',
            'new_password': 'second-password'
        }, headers=user['headers'])
        assert response.status_code == 401

        response = client.post('/auth/change-password', json={
            'current_password': 'first-password',
            'new_password': 'second-password'
        }, headers=user['headers'])
        assert response.status_code == 200

        login = client.post('/auth/login', json={
            'email': 'ada@example.com',
            'password': 'second-password'
        })
        assert login.status_code == 200

    def test_delete_deactivates_account(self, client, register):
        user = register('ada', password='first-password')

        assert client.delete('/auth/me', headers=user['headers']).status_code == 200

        login = client.post('/auth/login', json={
            'email': 'ada@example.com',
            'password': 'first-password'
        })
        assert login.status_code == 403
        assert login.get_json()['error'] == 'Account is disabled'

    def test_delete_ends_other_sessions(self, client, owner, project):
        second = client.post('/auth/login', json={
            'email': 'owner@example.com',
            'password': 'secret-password'
        }).get_json()
        second_headers = auth_headers(second['access_token'])

        assert client.delete('/auth/me', headers=owner['headers']).status_code == 200

        for path in ('members', 'tasks', 'stats', 'permissions', 'labels'):
            response = client.get(f"/projects/{project['id']}/{path}", headers=second_headers)
            assert response.status_code == 401, path
        assert client.get('/api/notifications', headers=second_headers).status_code == 401


class TestBlocklistMaintenance:

    def test_purge_tokens_command(self, app, client, register):
        user = register('ada')
        other = register('bob')
        client.post('/auth/logout', headers=user['headers'])
        client.post('/auth/logout', headers=other['headers'])

        with app.app_context():
            stale = TokenBlocklist.query.order_by(TokenBlocklist.id).first()
            stale.created_at = datetime.utcnow() - timedelta(days=365)
            db.session.commit()

        result = app.test_cli_runner().invoke(args=['purge-tokens'])
        assert 'Pruned 1 revoked tokens' in result.output

        with app.app_context():
            assert TokenBlocklist.query.count() == 1
