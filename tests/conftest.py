import os, sys, tempfile

# Make sure Python can see the repo root (the folder that contains app.py)
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# app.py reads its configuration at import time
_TMP_DIR = tempfile.mkdtemp(prefix='testgate-')
os.environ['STORE_BACKEND'] = 'json'
os.environ.setdefault('DATA_DIR', os.path.join(_TMP_DIR, 'data'))
os.environ.setdefault('LOG_FILE', os.path.join(_TMP_DIR, 'testgate.log'))
os.environ.setdefault('SECRET_KEY', 'testgate-test-secret')

import pytest
import app as testgate

DEFAULT_PASSWORD = 'password123'


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Fresh JSON store enforcing write policies for the signed-in user"""
    data_store = testgate.JsonFileStore(str(tmp_path), token_provider=testgate.current_access_token)
    monkeypatch.setattr(testgate, 'store', data_store)
    testgate.rate_limit_store.clear()
    return data_store


@pytest.fixture
def service_store(store):
    """Same data files with service privileges, used to seed fixtures"""
    return testgate.JsonFileStore(store.data_dir)


@pytest.fixture
def client(store):
    testgate.app.config['TESTING'] = True
    return testgate.app.test_client()


@pytest.fixture
def make_user(service_store):
    def _make_user(email, is_admin=False, trial_ends_at='default', subscription_ends_at=None):
        identity = service_store.sign_up(email, DEFAULT_PASSWORD)
        values = {'is_admin': is_admin, 'subscription_ends_at': subscription_ends_at}
        if trial_ends_at != 'default':
            values['trial_ends_at'] = trial_ends_at
        service_store.update('accounts', values, {'id': identity.id})
        return identity
    return _make_user


@pytest.fixture
def sign_in_as(client, service_store):
    def _sign_in_as(email):
        auth = service_store.sign_in(email, DEFAULT_PASSWORD)
        with client.session_transaction() as sess:
            sess['access_token'] = auth.access_token
        return auth.identity
    return _sign_in_as


@pytest.fixture
def seed_test(service_store):
    """Create a category with one test and the given (text, correct_answer) questions"""
    def _seed_test(questions=(('2+2=?', 1),), time_limit=1800, title='Arithmetic'):
        category = service_store.insert('categories', {
            'name': 'Mathematics', 'description': 'Numbers', 'time_limit': time_limit})
        test = service_store.insert('tests', {'title': title, 'category_id': category['id']})
        rows = service_store.insert_many('questions', [{
            'test_id': test['id'],
            'question_text': text,
            'answer_0': '3', 'answer_1': '4', 'answer_2': '5', 'answer_3': '22',
            'correct_answer': correct,
            'order_index': index,
        } for index, (text, correct) in enumerate(questions)])
        return category, test, rows
    return _seed_test
