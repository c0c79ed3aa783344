"""
Task endpoints: creation rules, filtering, updates and closing.
"""

import pytest

from models import Status


@pytest.fixture
def member(register, add_member):
    user = register('member')
    add_member(user, 'Super Admin')
    return user


@pytest.fixture
def create_task(client, project, owner, tracker_id):
    def _create_task(description='Crash on start', headers=None, **fields):
        payload = {'description': description, 'tracker_id': tracker_id, **fields}
        return client.post(f"/projects/{project['id']}/tasks", json=payload,
                           headers=headers or owner['headers'])
    return _create_task


class TestCreateTask:

    def test_default_status_is_first(self, create_task):
        response = create_task()

        assert response.status_code == 201
        task = response.get_json()['task']
        assert task['status']['name'] == 'Open'
        assert task['tracker']['name'] == 'Bug'
        assert task['assignees'] == []
        assert task['closed_at'] is None

    def test_unknown_tracker(self, create_task):
        response = create_task(tracker_id=9999)
        assert response.status_code == 400

    def test_status_of_other_project(self, app, client, owner, create_task):
        other = client.post('/projects', json={'name': 'Other'}, headers=owner['headers']).get_json()
        with app.app_context():
            foreign_status = Status.query.filter_by(project_id=other['project']['id']).first().id

        response = create_task(status_id=foreign_status)
        assert response.status_code == 400

    def test_assignees_must_be_members(self, register, create_task):
        outsider = register('outsider')

        response = create_task(assignees=[outsider['id']])
        assert response.status_code == 400
        assert response.get_json()['user_ids'] == [outsider['id']]

    def test_assignees_are_notified(self, client, member, create_task):
        response = create_task(assignees=[member['id'], member['id']])
        assert response.get_json()['task']['assignees'] == [member['id']]

        body = client.get('/api/notifications', headers=member['headers']).get_json()
        assert body['notifications'][0]['type'] == 'task_assigned'
        assert body['notifications'][0]['author']['username'] == 'owner'

    def test_self_assignment_does_not_notify(self, client, owner, create_task):
        create_task(assignees=[owner['id']])

        body = client.get('/api/notifications', headers=owner['headers']).get_json()
        assert body['total'] == 0

    def test_viewer_cannot_create(self, register, add_member, create_task):
        viewer = register('viewer')
        add_member(viewer, 'Viewer')

        assert create_task(headers=viewer['headers']).status_code == 403

    def test_closed_project_rejects_tasks(self, client, project, owner, create_task):
        client.delete(f"/projects/{project['id']}", headers=owner['headers'])
        assert create_task().status_code == 400


class TestListTasks:

    def test_filters_and_order(self, client, project, owner, create_task):
        first = create_task('Login fails').get_json()['task']
        second = create_task('Slow search').get_json()['task']
        client.delete(f"/projects/{project['id']}/tasks/{second['id']}", headers=owner['headers'])
        third = create_task('Typo on homepage').get_json()['task']

        url = f"/projects/{project['id']}/tasks"

        body = client.get(url, headers=owner['headers']).get_json()
        assert [t['id'] for t in body['tasks']] == [third['id'], first['id'], second['id']]

        body = client.get(f'{url}?include_closed=false', headers=owner['headers']).get_json()
        assert [t['id'] for t in body['tasks']] == [third['id'], first['id']]

        body = client.get(f'{url}?search=login', headers=owner['headers']).get_json()
        assert [t['id'] for t in body['tasks']] == [first['id']]

    def test_pagination(self, client, project, owner, create_task):
        for i in range(3):
            create_task(f'Task {i}')

        body = client.get(f"/projects/{project['id']}/tasks?per_page=2&page=2",
                          headers=owner['headers']).get_json()
        assert body['total'] == 3
        assert body['total_pages'] == 2
        assert len(body['tasks']) == 1

    def test_my_tasks(self, client, member, create_task):
        create_task('Mine', assignees=[member['id']])
        create_task('Not mine')

        body = client.get('/tasks/my', headers=member['headers']).get_json()
        assert [t['description'] for t in body['tasks']] == ['Mine']


class TestUpdateAndClose:

    def test_update_notifies_new_assignees(self, client, project, owner, member, create_task):
        task = create_task().get_json()['task']

        response = client.patch(f"/projects/{project['id']}/tasks/{task['id']}",
                                json={'description': 'Crash on exit', 'assignees': [member['id']]},
                                headers=owner['headers'])
        assert response.status_code == 200
        body = response.get_json()
        assert body['task']['updated_by']['id'] == owner['id']
        assert set(body['changes']) == {'description', 'assignees'}

        body = client.get('/api/notifications?type=task_assigned', headers=member['headers']).get_json()
        assert body['total'] == 1

    def test_no_changes(self, client, project, owner, create_task):
        task = create_task().get_json()['task']

        response = client.patch(f"/projects/{project['id']}/tasks/{task['id']}",
                                json={'description': task['description']},
                                headers=owner['headers'])
        assert response.get_json()['message'] == 'No changes to update'

    def test_close_task(self, client, project, owner, member, create_task):
        task = create_task(assignees=[member['id']]).get_json()['task']
        url = f"/projects/{project['id']}/tasks/{task['id']}"

        assert client.delete(url, headers=owner['headers']).status_code == 200
        assert client.delete(url, headers=owner['headers']).status_code == 409
        assert client.patch(url, json={'description': 'Too late'},
                            headers=owner['headers']).status_code == 400

        closed = client.get(url, headers=owner['headers']).get_json()
        assert closed['closed_by']['id'] == owner['id']

        types = [n['type'] for n in
                 client.get('/api/notifications', headers=member['headers']).get_json()['notifications']]
        assert types == ['task_closed', 'task_assigned', 'member_added']

    def test_task_from_other_project_not_found(self, client, owner, create_task):
        task = create_task().get_json()['task']
        other = client.post('/projects', json={'name': 'Other'}, headers=owner['headers']).get_json()

        response = client.get(f"/projects/{other['project']['id']}/tasks/{task['id']}",
                              headers=owner['headers'])
        assert response.status_code == 404
