from datetime import timedelta

import pytest
import app as testgate


@pytest.mark.parametrize('path', ['/dashboard', '/dashboard/results', '/test/abc'])
def test_signed_out_users_are_sent_to_login(client, path):
    r = client.get(path)
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/auth/login')


@pytest.mark.parametrize('path', ['/admin', '/admin/users', '/admin/categories/new'])
def test_admin_area_requires_sign_in(client, path):
    r = client.get(path)
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/auth/login')


def test_non_admins_are_sent_to_dashboard(client, make_user, sign_in_as):
    make_user('plain@example.com')
    sign_in_as('plain@example.com')
    r = client.get('/admin/users')
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/dashboard')


@pytest.mark.parametrize('path', ['/auth/login', '/auth/sign-up'])
def test_signed_in_users_skip_auth_pages(client, make_user, sign_in_as, path):
    make_user('back@example.com')
    sign_in_as('back@example.com')
    r = client.get(path)
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/dashboard')


@pytest.mark.parametrize('path', ['/auth/sign-up-success', '/auth/error'])
def test_auth_result_pages_stay_open_when_signed_in(client, make_user, sign_in_as, path):
    make_user('done@example.com')
    sign_in_as('done@example.com')
    assert client.get(path).status_code == 200


def test_expired_user_sees_contact_banner_and_cannot_start(client, make_user, sign_in_as, seed_test, service_store):
    expired = testgate.to_iso(testgate.utcnow() - timedelta(days=1))
    make_user('expired@example.com', trial_ends_at=expired)
    sign_in_as('expired@example.com')
    service_store.upsert('settings', {'key': testgate.TELEGRAM_SETTING_KEY, 'value': 'shop_admin'},
                         on_conflict='key')
    _, test, _ = seed_test()

    page = client.get('/dashboard')
    assert page.status_code == 200
    assert b'Your access has expired' in page.data
    assert b'https://t.me/shop_admin' in page.data

    r = client.get(f"/test/{test['id']}")
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/dashboard')
    assert service_store.select('attempts') == []


def test_trial_user_sees_countdown(client, make_user, sign_in_as):
    make_user('trial@example.com')
    sign_in_as('trial@example.com')
    page = client.get('/dashboard')
    assert b'Free trial' in page.data
    assert b'id="accessRemaining"' in page.data


def test_invalid_login_re_renders_form(client, make_user):
    make_user('real@example.com')
    r = client.post('/auth/login', data={'email': 'real@example.com', 'password': 'wrong-password'})
    assert r.status_code == 200
    assert b'Invalid email or password' in r.data


def test_sign_up_validation(client, service_store):
    r = client.post('/auth/sign-up', data={
        'email': 'not-an-email', 'password': 'short', 'confirm_password': 'other'})
    assert r.status_code == 200
    assert b'Please enter a valid email address.' in r.data
    assert b'Password must be at least 8 characters long.' in r.data
    assert b'Passwords do not match.' in r.data
    assert service_store.select('accounts') == []


def test_duplicate_sign_up(client, make_user):
    make_user('taken@example.com')
    r = client.post('/auth/sign-up', data={
        'email': 'taken@example.com', 'password': 'password123', 'confirm_password': 'password123'})
    assert r.status_code == 200
    assert b'already exists' in r.data


def test_sign_in_is_rate_limited(client, store):
    for _ in range(5):
        client.post('/auth/login', data={'email': 'x@example.com', 'password': 'nope'})
    r = client.post('/auth/login', data={'email': 'x@example.com', 'password': 'nope'})
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/auth/login')


def test_logout_clears_session(client, make_user, sign_in_as, service_store):
    make_user('leaving@example.com')
    sign_in_as('leaving@example.com')
    with client.session_transaction() as sess:
        token = sess['access_token']

    r = client.post('/logout')
    assert r.status_code == 302
    assert service_store.get_identity(token) is None
    assert client.get('/dashboard').status_code == 302


def test_security_headers(client):
    r = client.get('/')
    assert r.headers['X-Frame-Options'] == 'DENY'
    assert r.headers['X-Content-Type-Options'] == 'nosniff'
