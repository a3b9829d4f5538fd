"""Authentication Tests

Registration, login, the current-user endpoint and the token error split
(missing token -> 401, invalid or expired token -> 403).
"""

from datetime import datetime, timedelta, timezone

import jwt as pyjwt
import pytest
from flask_jwt_extended import create_access_token, decode_token

from conftest import auth_header


# =============================================================================
# Register
# =============================================================================

class TestRegister:

    def test_register_returns_user_and_token(self, client):
        response = client.post('/api/auth/register', json={
            'email': '  Alice@Example.com ',
            'password': 'secret123',
            'confirm_password': 'secret123',
            'first_name': 'Alice',
            'last_name': 'Smith',
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body['token']
        assert body['user']['email'] == 'alice@example.com'
        assert body['user']['username'] == 'alice_smith'
        assert body['user']['role'] == 'member'
        assert 'password_hash' not in body['user']

    def test_register_creates_personal_admin_team(self, client, alice):
        memberships = alice['user']['memberships']
        assert len(memberships) == 1
        assert memberships[0]['role'] == 'admin'

        teams = client.get('/api/teams', headers=auth_header(alice['token'])).get_json()
        assert [team['name'] for team in teams] == ["Alice's Team"]
        assert teams[0]['my_role'] == 'admin'

    def test_register_ignores_client_role(self, register):
        body = register(role='admin')
        assert body['user']['role'] == 'member'

    def test_duplicate_email_conflicts(self, client, alice):
        response = client.post('/api/auth/register', json={
            'email': 'ALICE@example.com',
            'password': 'secret123',
            'confirm_password': 'secret123',
            'first_name': 'Other',
            'last_name': 'Person',
        })

        assert response.status_code == 409
        assert response.get_json()['error'] == 'conflict'

    def test_duplicate_username_conflicts(self, register, client):
        register(username='taken')
        response = client.post('/api/auth/register', json={
            'email': 'new@example.com',
            'password': 'secret123',
            'confirm_password': 'secret123',
            'first_name': 'New',
            'last_name': 'Person',
            'username': 'taken',
        })

        assert response.status_code == 409

    def test_derived_username_gets_suffix(self, register):
        first = register(first_name='Sam', last_name='Lee')
        second = register(first_name='Sam', last_name='Lee')

        assert first['user']['username'] == 'sam_lee'
        assert second['user']['username'] == 'sam_lee2'

    def test_password_mismatch(self, client):
        response = client.post('/api/auth/register', json={
            'email': 'a@example.com',
            'password': 'secret123',
            'confirm_password': 'different',
            'first_name': 'A',
            'last_name': 'B',
        })

        assert response.status_code == 400
        assert 'confirm_password' in response.get_json()['details']

    def test_short_password_and_bad_email(self, client):
        response = client.post('/api/auth/register', json={
            'email': 'not-an-email',
            'password': '123',
            'confirm_password': '123',
            'first_name': 'A',
            'last_name': 'B',
        })

        assert response.status_code == 400
        details = response.get_json()['details']
        assert 'email' in details
        assert 'password' in details

    @pytest.mark.parametrize('field', ['first_name', 'last_name'])
    def test_blank_name_rejected(self, client, field):
        payload = {
            'email': 'blank@example.com',
            'password': 'secret123',
            'confirm_password': 'secret123',
            'first_name': 'Blank',
            'last_name': 'Name',
        }
        payload[field] = '   '

        response = client.post('/api/auth/register', json=payload)

        assert response.status_code == 400
        assert field in response.get_json()['details']

    def test_missing_body(self, client):
        response = client.post('/api/auth/register', data='not json')
        assert response.status_code == 400


# =============================================================================
# Login
# =============================================================================

class TestLogin:

    def test_login_success(self, client, alice):
        response = client.post('/api/auth/login', json={
            'email': 'ALICE@example.com',
            'password': 'secret123',
        })

        assert response.status_code == 200
        body = response.get_json()
        assert body['user']['id'] == alice['user']['id']
        assert body['token']

    def test_wrong_password_and_unknown_email_look_the_same(self, client, alice):
        wrong_password = client.post('/api/auth/login', json={
            'email': 'alice@example.com',
            'password': 'wrong-password',
        })
        unknown_email = client.post('/api/auth/login', json={
            'email': 'nobody@example.com',
            'password': 'secret123',
        })

        assert wrong_password.status_code == 401
        assert unknown_email.status_code == 401
        assert wrong_password.get_json() == unknown_email.get_json()
        assert wrong_password.get_json()['message'] == 'Invalid credentials'

    def test_token_claims(self, app, alice):
        with app.app_context():
            claims = decode_token(alice['token'])

        assert claims['sub'] == str(alice['user']['id'])
        assert claims['id'] == alice['user']['id']
        assert claims['email'] == 'alice@example.com'
        assert claims['role'] == 'member'
        assert claims['exp'] - claims['iat'] == 24 * 3600


# =============================================================================
# Current user and token errors
# =============================================================================

class TestTokens:

    def test_me(self, client, alice):
        response = client.get('/api/auth/me', headers=auth_header(alice['token']))

        assert response.status_code == 200
        assert response.get_json()['user']['email'] == 'alice@example.com'

    def test_missing_token_is_401(self, client):
        response = client.get('/api/auth/me')

        assert response.status_code == 401
        assert response.get_json()['error'] == 'authorization_required'

    def test_empty_bearer_is_treated_as_missing(self, client):
        response = client.get('/api/auth/me', headers={'Authorization': 'Bearer '})

        assert response.status_code == 401
        assert response.get_json()['error'] == 'authorization_required'

    def test_wrong_scheme_is_401(self, client, alice):
        response = client.get('/api/auth/me', headers={'Authorization': f"Basic {alice['token']}"})
        assert response.status_code == 401

    def test_malformed_token_is_403(self, client):
        response = client.get('/api/auth/me', headers=auth_header('not-a-token'))

        assert response.status_code == 403
        assert response.get_json()['error'] == 'invalid_token'

    def test_wrong_signature_is_403(self, client, alice):
        now = datetime.now(timezone.utc)
        forged = pyjwt.encode({
            'sub': str(alice['user']['id']),
            'type': 'access',
            'fresh': False,
            'jti': 'forged',
            'iat': now,
            'nbf': now,
            'exp': now + timedelta(hours=1),
        }, 'some-other-secret', algorithm='HS256')

        response = client.get('/api/auth/me', headers=auth_header(forged))

        assert response.status_code == 403

    def test_expired_token_is_403(self, app, client, alice):
        with app.app_context():
            expired = create_access_token(
                identity=str(alice['user']['id']),
                expires_delta=timedelta(seconds=-1)
            )

        response = client.get('/api/auth/me', headers=auth_header(expired))

        assert response.status_code == 403
        assert response.get_json()['error'] == 'token_expired'

    def test_token_for_unknown_user_is_401(self, app, client):
        with app.app_context():
            token = create_access_token(identity='9999')

        response = client.get('/api/auth/me', headers=auth_header(token))

        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid token'
