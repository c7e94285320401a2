from datetime import datetime, timezone

import pytest
import app as testgate

NOW = datetime(2025, 1, 15, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def admin(make_user, sign_in_as):
    identity = make_user('admin@example.com', is_admin=True)
    sign_in_as('admin@example.com')
    return identity


@pytest.fixture
def frozen_now(monkeypatch):
    monkeypatch.setattr(testgate, 'utcnow', lambda: NOW)
    return NOW


def test_grant_from_now_when_no_subscription(client, admin, make_user, service_store, frozen_now):
    user = make_user('buyer@example.com')
    r = client.post('/api/admin/grant-subscription', json={'userId': user.id, 'months': 1})
    assert r.status_code == 200
    assert r.get_json() == {'success': True, 'subscriptionEndsAt': '2025-02-15T00:00:00+00:00'}
    assert service_store.get('accounts', {'id': user.id})['subscription_ends_at'] == '2025-02-15T00:00:00+00:00'


def test_grant_extends_running_subscription(client, admin, make_user, frozen_now):
    user = make_user('loyal@example.com', subscription_ends_at='2025-03-01T00:00:00+00:00')
    r = client.post('/api/admin/grant-subscription', json={'userId': user.id, 'months': 1})
    assert r.get_json()['subscriptionEndsAt'] == '2025-04-01T00:00:00+00:00'


def test_grant_restarts_expired_subscription_from_now(client, admin, make_user, frozen_now):
    user = make_user('lapsed@example.com', subscription_ends_at='2024-12-01T00:00:00+00:00')
    r = client.post('/api/admin/grant-subscription', json={'userId': user.id, 'months': 3})
    assert r.get_json()['subscriptionEndsAt'] == '2025-04-15T00:00:00+00:00'


def test_month_arithmetic_clamps_to_month_end():
    jan31 = datetime(2025, 1, 31, 9, 30, tzinfo=timezone.utc)
    assert testgate.add_months(jan31, 1) == datetime(2025, 2, 28, 9, 30, tzinfo=timezone.utc)
    assert testgate.add_months(jan31, 13) == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)
    assert testgate.add_months(datetime(2024, 1, 31, tzinfo=timezone.utc), 1).day == 29


@pytest.mark.parametrize('payload', [
    {'userId': 'x', 'months': 0},
    {'userId': 'x', 'months': -2},
    {'userId': 'x', 'months': '3'},
    {'userId': 'x', 'months': True},
    {'userId': 'x', 'months': 121},
    {'userId': 'x', 'months': 10 ** 9},
    {'months': 1},
    {},
])
def test_grant_rejects_invalid_input(client, admin, payload):
    r = client.post('/api/admin/grant-subscription', json=payload)
    assert r.status_code == 400
    assert 'error' in r.get_json()


def test_grant_unknown_user_is_404(client, admin):
    r = client.post('/api/admin/grant-subscription', json={'userId': 'missing', 'months': 1})
    assert r.status_code == 404


def test_grant_store_failure_is_500(client, admin, make_user, store, monkeypatch):
    user = make_user('unlucky@example.com')

    def failing_update(collection, values, filters):
        raise testgate.StoreError('connection reset', code='network_error')

    monkeypatch.setattr(store, 'update', failing_update)
    r = client.post('/api/admin/grant-subscription', json={'userId': user.id, 'months': 1})
    assert r.status_code == 500
    assert 'connection reset' in r.get_json()['error']


def test_unexpected_error_is_internal_server_error(client, admin, make_user, store, monkeypatch):
    user = make_user('boom@example.com')

    def broken_update(collection, values, filters):
        raise RuntimeError('boom')

    monkeypatch.setattr(store, 'update', broken_update)
    r = client.post('/api/admin/toggle-admin', json={'userId': user.id, 'isAdmin': True})
    assert r.status_code == 500
    assert r.get_json() == {'error': 'Internal server error'}


@pytest.mark.parametrize('path', [
    '/api/admin/grant-subscription', '/api/admin/toggle-admin', '/api/admin/update-settings'])
def test_api_requires_sign_in(client, store, path):
    r = client.post(path, json={})
    assert r.status_code == 401
    assert r.get_json() == {'error': 'Unauthorized'}


@pytest.mark.parametrize('path', [
    '/api/admin/grant-subscription', '/api/admin/toggle-admin', '/api/admin/update-settings'])
def test_api_requires_admin(client, make_user, sign_in_as, path):
    make_user('plain@example.com')
    sign_in_as('plain@example.com')
    r = client.post(path, json={})
    assert r.status_code == 403


def test_toggle_admin_promotes_and_demotes_others(client, admin, make_user, service_store):
    user = make_user('helper@example.com')
    r = client.post('/api/admin/toggle-admin', json={'userId': user.id, 'isAdmin': True})
    assert r.get_json() == {'success': True, 'isAdmin': True}
    assert service_store.get('accounts', {'id': user.id})['is_admin'] is True

    r = client.post('/api/admin/toggle-admin', json={'userId': user.id, 'isAdmin': False})
    assert r.status_code == 200
    assert service_store.get('accounts', {'id': user.id})['is_admin'] is False


def test_admin_cannot_demote_self(client, admin, service_store):
    r = client.post('/api/admin/toggle-admin', json={'userId': admin.id, 'isAdmin': False})
    assert r.status_code == 400
    assert r.get_json()['error'] == 'Cannot remove your own admin status. Ask another admin to do it.'
    assert service_store.get('accounts', {'id': admin.id})['is_admin'] is True


def test_toggle_admin_validation_and_unknown_user(client, admin):
    assert client.post('/api/admin/toggle-admin', json={'userId': admin.id, 'isAdmin': 'no'}).status_code == 400
    r = client.post('/api/admin/toggle-admin', json={'userId': 'missing', 'isAdmin': True})
    assert r.status_code == 404


def test_update_settings_upserts_telegram_handle(client, admin, service_store):
    key = testgate.TELEGRAM_SETTING_KEY
    r = client.post('/api/admin/update-settings', json={'key': key, 'value': '@first_admin'})
    assert r.get_json() == {'success': True}
    r = client.post('/api/admin/update-settings', json={'key': key, 'value': 'second_admin'})
    assert r.status_code == 200

    rows = service_store.select('settings', {'key': key})
    assert len(rows) == 1
    assert rows[0]['value'] == 'second_admin'
    assert rows[0]['updated_by'] == admin.id
    assert rows[0]['updated_at'] is not None

    settings = testgate.SiteSettings.from_rows(rows, 'youradmin')
    assert settings.telegram_admin_username == 'second_admin'


def test_update_settings_requires_key_and_value(client, admin):
    assert client.post('/api/admin/update-settings', json={'key': 'x'}).status_code == 400
    assert client.post('/api/admin/update-settings', json={'value': 'x'}).status_code == 400


def test_settings_default_to_configured_handle():
    assert testgate.SiteSettings.from_rows([], 'youradmin').telegram_admin_username == 'youradmin'
