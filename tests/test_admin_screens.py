import pytest
import app as testgate


@pytest.fixture
def admin(make_user, sign_in_as):
    identity = make_user('admin@example.com', is_admin=True)
    sign_in_as('admin@example.com')
    return identity


def test_admin_pages_render(client, admin, seed_test):
    _, test, rows = seed_test()
    paths = [
        '/admin', '/admin/categories', '/admin/categories/new', '/admin/tests', '/admin/tests/new',
        f"/admin/tests/{test['id']}/questions", f"/admin/tests/{test['id']}/questions/new",
        f"/admin/tests/{test['id']}/edit", f"/admin/tests/{test['id']}/questions/{rows[0]['id']}/edit",
        '/admin/users', '/admin/settings',
    ]
    for path in paths:
        r = client.get(path)
        assert r.status_code == 200, f"{path} returned {r.status_code}"


def test_create_category_stores_seconds(client, admin, service_store):
    r = client.post('/admin/categories/new', data={
        'name': 'History', 'description': 'Dates and people', 'time_limit': '45'})
    assert r.status_code == 302

    rows = service_store.select('categories', {'name': 'History'})
    assert len(rows) == 1
    assert rows[0]['time_limit'] == 45 * 60


@pytest.mark.parametrize('form, message', [
    ({'name': '', 'description': 'd', 'time_limit': '10'}, b'Name is required.'),
    ({'name': 'n', 'description': '', 'time_limit': '10'}, b'Description is required.'),
    ({'name': 'n', 'description': 'd', 'time_limit': '0'}, b'Time limit must be at least 1 minute.'),
    ({'name': 'n', 'description': 'd', 'time_limit': 'soon'}, b'whole number of minutes'),
])
def test_category_validation_blocks_write(client, admin, service_store, form, message):
    r = client.post('/admin/categories/new', data=form)
    assert r.status_code == 200
    assert message in r.data
    assert service_store.select('categories') == []


def test_edit_category(client, admin, service_store, seed_test):
    category, _, _ = seed_test()
    r = client.post(f"/admin/categories/{category['id']}/edit", data={
        'name': 'Maths', 'description': 'Numbers again', 'time_limit': '20'})
    assert r.status_code == 302
    row = service_store.get('categories', {'id': category['id']})
    assert (row['name'], row['time_limit']) == ('Maths', 1200)


def test_deleting_category_cascades(client, admin, service_store, seed_test, make_user):
    category, test, _ = seed_test([('a', 0), ('b', 1)])
    student = make_user('student@example.com')
    attempt = testgate.AttemptRecorder(service_store).open(student.id, test['id'])

    r = client.post(f"/admin/categories/{category['id']}/delete")
    assert r.status_code == 302
    assert service_store.select('categories') == []
    assert service_store.select('tests') == []
    assert service_store.select('questions') == []
    assert service_store.get('attempts', {'id': attempt.id}) is None


def test_create_test_requires_existing_category(client, admin, service_store, seed_test):
    category, _, _ = seed_test()
    r = client.post('/admin/tests/new', data={'title': 'Ghost', 'category_id': 'missing'})
    assert r.status_code == 200
    assert b'Please select a category.' in r.data

    r = client.post('/admin/tests/new', data={'title': 'Fractions', 'category_id': category['id']})
    assert r.status_code == 302
    created = service_store.get('tests', {'title': 'Fractions'})
    assert r.headers['Location'].endswith(f"/admin/tests/{created['id']}/questions")


def test_edit_and_delete_test(client, admin, service_store, seed_test):
    category, test, _ = seed_test()
    client.post(f"/admin/tests/{test['id']}/edit", data={'title': 'Renamed', 'category_id': category['id']})
    assert service_store.get('tests', {'id': test['id']})['title'] == 'Renamed'

    client.post(f"/admin/tests/{test['id']}/delete")
    assert service_store.get('tests', {'id': test['id']}) is None
    assert service_store.select('questions', {'test_id': test['id']}) == []


def test_add_question_uses_next_order_index(client, admin, service_store, seed_test):
    _, test, _ = seed_test([('a', 0), ('b', 1)])
    r = client.post(f"/admin/tests/{test['id']}/questions/new", data={
        'question_text': 'Capital of France?', 'image_url': '',
        'answer_0': 'Paris', 'answer_1': 'Rome', 'answer_2': 'Madrid', 'answer_3': 'Berlin',
        'correct_answer': '0',
    })
    assert r.status_code == 302

    row = service_store.get('questions', {'question_text': 'Capital of France?'})
    assert row['order_index'] == 2
    assert row['correct_answer'] == 0
    assert row['image_url'] is None


def test_question_validation(client, admin, service_store, seed_test):
    _, test, _ = seed_test(questions=())
    r = client.post(f"/admin/tests/{test['id']}/questions/new", data={
        'question_text': 'Incomplete', 'answer_0': 'a', 'answer_1': 'b', 'answer_2': '', 'answer_3': 'd'})
    assert r.status_code == 200
    assert b'All four answers are required.' in r.data
    assert b'Select the correct answer.' in r.data
    assert service_store.select('questions') == []


def test_edit_and_delete_question(client, admin, service_store, seed_test):
    _, test, rows = seed_test([('a', 0)])
    question_id = rows[0]['id']
    client.post(f"/admin/tests/{test['id']}/questions/{question_id}/edit", data={
        'question_text': 'Updated', 'image_url': 'https://example.com/q.png',
        'answer_0': '1', 'answer_1': '2', 'answer_2': '3', 'answer_3': '4', 'correct_answer': '3'})
    row = service_store.get('questions', {'id': question_id})
    assert (row['question_text'], row['correct_answer'], row['image_url']) == (
        'Updated', 3, 'https://example.com/q.png')

    client.post(f"/admin/tests/{test['id']}/questions/{question_id}/delete")
    assert service_store.get('questions', {'id': question_id}) is None


def test_users_page_shows_status_and_stats(client, admin, make_user, service_store, seed_test):
    student = make_user('student@example.com')
    _, test, rows = seed_test([('a', 0)])
    recorder = testgate.AttemptRecorder(service_store)
    attempt = recorder.open(student.id, test['id'])
    recorder.finalize(attempt.id, [testgate._from_row(testgate.Question, rows[0])], {rows[0]['id']: 0})

    r = client.get('/admin/users')
    assert r.status_code == 200
    assert b'student@example.com' in r.data
    assert b'Trial Active' in r.data
    assert b'Admin (Full Access)' in r.data
    assert b'100%' in r.data


def test_failed_delete_flashes_error(client, admin, store, seed_test, monkeypatch):
    category, _, _ = seed_test()

    def failing_delete(collection, filters):
        raise testgate.StoreError('permission denied', code='42501')

    monkeypatch.setattr(store, 'delete', failing_delete)
    r = client.post(f"/admin/categories/{category['id']}/delete", follow_redirects=True)
    assert r.status_code == 200
    assert b'Failed to delete category.' in r.data
