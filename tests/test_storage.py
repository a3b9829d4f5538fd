"""Storage Tests

Unique constraints enforced by the database surface as ConflictError (409),
even when a route's own existence check is skipped, for example when two
requests race.
"""

import pytest

from errors import ConflictError
from models import TeamMember, User, db
from storage import get_storage


def create_user(storage, email, username):
    return storage.create_user(
        email=email,
        username=username,
        password_hash='not-a-real-hash',
        first_name='Dup',
        last_name='User'
    )


class TestUniqueConstraints:

    def test_duplicate_username_raises_conflict_and_session_recovers(self, app):
        with app.app_context():
            storage = get_storage()
            create_user(storage, 'first@example.com', 'dup')
            storage.commit()

            with pytest.raises(ConflictError) as excinfo:
                create_user(storage, 'second@example.com', 'dup')

            assert excinfo.value.status_code == 409
            # rollback 之後 session 還能繼續使用
            assert storage.get_user_by_email('first@example.com') is not None
            create_user(storage, 'third@example.com', 'other')
            storage.commit()
            assert User.query.count() == 2

    def test_duplicate_email_raises_conflict(self, app):
        with app.app_context():
            storage = get_storage()
            create_user(storage, 'same@example.com', 'one')
            storage.commit()

            with pytest.raises(ConflictError):
                create_user(storage, 'SAME@example.com', 'two')

    def test_duplicate_membership_row_raises_conflict_on_commit(self, app, alice):
        team_id = alice['user']['memberships'][0]['team_id']
        with app.app_context():
            storage = get_storage()
            db.session.add(TeamMember(user_id=alice['user']['id'], team_id=team_id, role='member'))

            with pytest.raises(ConflictError):
                storage.commit()

            assert TeamMember.query.filter_by(user_id=alice['user']['id'], team_id=team_id).count() == 1

    def test_race_on_register_returns_409(self, app, client, register, monkeypatch):
        register(username='racer')
        # 模擬另一個 request 在檢查之後才寫入同樣的 username
        monkeypatch.setattr(app.extensions['storage'], 'get_user_by_username', lambda username: None)

        response = client.post('/api/auth/register', json={
            'email': 'late@example.com',
            'password': 'secret123',
            'confirm_password': 'secret123',
            'first_name': 'Late',
            'last_name': 'Comer',
            'username': 'racer',
        })

        assert response.status_code == 409
        assert response.get_json()['error'] == 'conflict'

