"""
Trackers, labels and statuses.
"""

from models import LABEL_COLORS


class TestTrackers:

    def test_seeded_trackers(self, client, owner):
        body = client.get('/trackers', headers=owner['headers']).get_json()
        assert [t['name'] for t in body['trackers']] == ['Bug', 'Error', 'Feature']


class TestLabels:

    def test_label_lifecycle(self, client, project, owner):
        url = f"/projects/{project['id']}/labels"

        response = client.post(url, json={'name': 'backend', 'color': LABEL_COLORS[1]},
                               headers=owner['headers'])
        assert response.status_code == 201
        label = response.get_json()['label']

        response = client.post(url, json={'name': 'backend', 'color': LABEL_COLORS[2]},
                               headers=owner['headers'])
        assert response.status_code == 409

        response = client.patch(f"{url}/{label['id']}", json={'color': LABEL_COLORS[3]},
                                headers=owner['headers'])
        assert response.get_json()['label']['color'] == LABEL_COLORS[3]

        assert client.delete(f"{url}/{label['id']}", headers=owner['headers']).status_code == 200
        assert client.get(url, headers=owner['headers']).get_json()['total'] == 0

    def test_color_must_be_from_palette(self, client, project, owner):
        response = client.post(f"/projects/{project['id']}/labels",
                               json={'name': 'ui', 'color': 'not-a-color'},
                               headers=owner['headers'])
        assert response.status_code == 400

    def test_viewer_reads_but_cannot_create(self, client, project, register, add_member):
        viewer = register('viewer')
        add_member(viewer, 'Viewer')
        url = f"/projects/{project['id']}/labels"

        assert client.get(url, headers=viewer['headers']).status_code == 200
        response = client.post(url, json={'name': 'ui', 'color': LABEL_COLORS[0]},
                               headers=viewer['headers'])
        assert response.status_code == 403


class TestStatuses:

    def test_status_in_use_cannot_be_deleted(self, client, project, owner, tracker_id):
        pid = project['id']
        task = client.post(f'/projects/{pid}/tasks',
                           json={'description': 'Broken', 'tracker_id': tracker_id},
                           headers=owner['headers']).get_json()['task']

        response = client.delete(f"/projects/{pid}/statuses/{task['status']['id']}",
                                 headers=owner['headers'])
        assert response.status_code == 409

    def test_create_status(self, client, project, owner):
        url = f"/projects/{project['id']}/statuses"

        response = client.post(url, json={'name': 'Blocked', 'color': LABEL_COLORS[4]},
                               headers=owner['headers'])
        assert response.status_code == 201
        assert client.get(url, headers=owner['headers']).get_json()['total'] == 4
