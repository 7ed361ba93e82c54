"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API driver.
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from shapenet import api_server
from shapenet.generator import FEATURE_COUNT


@pytest.fixture
def background_tasks(monkeypatch):
    """Record background tasks instead of starting them."""
    started = []

    def fake_start(target, *args, **kwargs):
        started.append((target, args))

    monkeypatch.setattr(api_server.socketio, 'start_background_task', fake_start)
    return started


@pytest.fixture
def client(background_tasks):
    """Flask test client with empty server state."""
    api_server.active_networks.clear()
    api_server.training_jobs.clear()
    api_server.generator.figure_count = 4
    api_server.app.config['TESTING'] = True

    with api_server.app.test_client() as test_client:
        yield test_client

    api_server.active_networks.clear()
    api_server.training_jobs.clear()
    api_server.generator.figure_count = 4


@pytest.fixture
def network_id(client):
    """Create a small network and return its id."""
    response = client.post('/api/networks', json={
        'layer_sizes': [FEATURE_COUNT, 6, 4],
        'seed': 1
    })
    assert response.status_code == 201
    return response.get_json()['network_id']


@pytest.mark.unit
class TestNetworkManagement:
    """Test creating, listing and deleting networks."""

    def test_status(self, client):
        response = client.get('/api/status')

        assert response.status_code == 200
        assert response.get_json() == {
            'status': 'online',
            'active_networks': 0,
            'training_jobs': 0
        }

    def test_create_default_network(self, client):
        """Test that the default architecture fits the generator."""
        response = client.post('/api/networks')
        data = response.get_json()

        assert response.status_code == 201
        assert data['architecture'] == [400, 40, 4]
        assert data['status'] == 'created'
        assert data['network_id'] in api_server.active_networks

    def test_single_layer_rejected(self, client):
        """Test that a one-layer network is refused and not stored."""
        response = client.post('/api/networks', json={'layer_sizes': [5]})

        assert response.status_code == 400
        assert 'Invalid architecture' in response.get_json()['error']
        assert api_server.active_networks == {}

    @pytest.mark.parametrize('sizes', [[10, 4], [400, 8, 3]])
    def test_architecture_must_fit_generator(self, client, sizes):
        response = client.post('/api/networks', json={'layer_sizes': sizes})

        assert response.status_code == 400
        assert api_server.active_networks == {}

    @pytest.mark.parametrize('body', [
        {'layer_sizes': 'big'},
        {'learning_rate': -1},
        {'seed': 'abc'},
        {'seed': True},
        {'learning_rate': True},
        {'layer_sizes': [400, True, 4]},
    ])
    def test_invalid_parameters(self, client, body):
        response = client.post('/api/networks', json=body)
        assert response.status_code == 400

    def test_list_networks(self, client, network_id):
        response = client.get('/api/networks')
        networks = response.get_json()['networks']

        assert response.status_code == 200
        assert len(networks) == 1
        assert networks[0]['network_id'] == network_id
        assert networks[0]['busy'] is False

    def test_delete_network(self, client, network_id):
        response = client.delete(f'/api/networks/{network_id}')

        assert response.status_code == 200
        assert network_id not in api_server.active_networks
        assert client.delete(f'/api/networks/{network_id}').status_code == 404


@pytest.mark.unit
class TestRecognition:
    """Test predict, train_one, test and outputs."""

    def test_predict(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict')
        data = response.get_json()

        assert response.status_code == 200
        assert 0 <= data['recognized_class'] < 4
        assert 0 <= data['actual_class'] < 4
        assert data['correct'] == (data['recognized_class'] == data['actual_class'])
        assert len(data['network_output']) == 4
        assert data['image_data']

    def test_predict_unknown_network(self, client):
        response = client.post('/api/networks/missing/predict')
        assert response.status_code == 404

    def test_train_one(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/train_one')
        data = response.get_json()

        assert response.status_code == 200
        assert 0 <= data['attempts'] <= 100
        assert data['converged'] == (data['attempts'] < 100)
        assert api_server.active_networks[network_id]['trained'] is True

    def test_outputs_match_last_prediction(self, client, network_id):
        predicted = client.post(f'/api/networks/{network_id}/predict').get_json()
        response = client.get(f'/api/networks/{network_id}/outputs')

        assert response.status_code == 200
        assert response.get_json()['network_output'] == predicted['network_output']

    def test_test_network(self, client, network_id):
        response = client.post(
            f'/api/networks/{network_id}/test', json={'test_size': 8}
        )
        accuracy = response.get_json()['accuracy']

        assert response.status_code == 200
        assert 0.0 <= accuracy <= 1.0

    def test_test_on_empty_set_is_null(self, client, network_id):
        response = client.post(
            f'/api/networks/{network_id}/test', json={'test_size': 0}
        )

        assert response.status_code == 200
        assert response.get_json()['accuracy'] is None

    def test_generator_settings(self, client):
        response = client.put('/api/generator', json={'figure_count': 3})

        assert response.status_code == 200
        assert response.get_json()['figure_count'] == 3
        assert client.get('/api/generator').get_json()['feature_count'] == 400

    def test_test_without_body(self, client, network_id):
        """Test that the request body of /test is optional."""
        response = client.post(f'/api/networks/{network_id}/test')
        data = response.get_json()

        assert response.status_code == 200
        assert data['test_size'] == 100
        assert 0.0 <= data['accuracy'] <= 1.0

    def test_unexpected_error_returns_500(self, client, network_id, monkeypatch):
        """Test that a failure inside the network becomes a JSON 500."""
        def broken(*_args, **_kwargs):
            raise RuntimeError('boom')

        net = api_server.active_networks[network_id]['network']
        monkeypatch.setattr(net, 'predict', broken)

        response = client.post(f'/api/networks/{network_id}/predict')

        assert response.status_code == 500
        assert 'boom' in response.get_json()['error']

    def test_figure_count_limited_by_network_outputs(self, client):
        """Test that the generator cannot outgrow an existing network."""
        client.put('/api/generator', json={'figure_count': 2})
        created = client.post('/api/networks', json={
            'layer_sizes': [FEATURE_COUNT, 6, 2],
            'seed': 1
        })
        assert created.status_code == 201

        response = client.put('/api/generator', json={'figure_count': 4})

        assert response.status_code == 409
        assert response.get_json()['network_ids'] == [
            created.get_json()['network_id']
        ]
        assert api_server.generator.figure_count == 2

        # Fewer classes than outputs is still fine
        assert client.put('/api/generator', json={'figure_count': 1}).status_code == 200

    @pytest.mark.parametrize('count', [0, 9, 'three', True])
    def test_invalid_generator_settings(self, client, count):
        response = client.put('/api/generator', json={'figure_count': count})

        assert response.status_code == 400
        assert api_server.generator.figure_count == 4


@pytest.mark.unit
class TestBackgroundTraining:
    """Test the background training job."""

    def test_train_starts_background_job(self, client, network_id, background_tasks):
        response = client.post(f'/api/networks/{network_id}/train', json={
            'training_size': 4,
            'epochs': 1,
            'acceptable_accuracy': 0.9
        })
        data = response.get_json()

        assert response.status_code == 202
        assert data['status'] == 'training_started'
        assert api_server.training_jobs[data['job_id']]['status'] == 'pending'
        assert len(background_tasks) == 1
        target, args = background_tasks[0]
        assert target is api_server.train_network_task
        assert args == (network_id, data['job_id'], 4, 1, 0.9)

    def test_train_without_body(self, client, network_id, background_tasks):
        """Test that /train falls back to its defaults without a body."""
        response = client.post(f'/api/networks/{network_id}/train')
        data = response.get_json()

        assert response.status_code == 202
        _, args = background_tasks[0]
        assert args == (network_id, data['job_id'], 100, 50, 0.9)

    def test_failed_start_frees_network(self, client, network_id, monkeypatch):
        """Test that a job that cannot start leaves the network usable."""
        def broken(*_args, **_kwargs):
            raise RuntimeError('no workers')

        monkeypatch.setattr(api_server.socketio, 'start_background_task', broken)

        response = client.post(f'/api/networks/{network_id}/train', json={'epochs': 1})

        assert response.status_code == 500
        assert api_server.active_networks[network_id]['busy'] is False

    def test_busy_network_refuses_calls(self, client, network_id):
        client.post(f'/api/networks/{network_id}/train', json={'epochs': 1})

        assert client.post(f'/api/networks/{network_id}/predict').status_code == 409
        assert client.post(f'/api/networks/{network_id}/train_one').status_code == 409
        assert client.post(f'/api/networks/{network_id}/train').status_code == 409
        assert client.post(f'/api/networks/{network_id}/test').status_code == 409
        assert client.delete(f'/api/networks/{network_id}').status_code == 409

    @pytest.mark.parametrize('body', [
        {'training_size': 0},
        {'epochs': 0},
        {'epochs': True},
        {'training_size': False},
        {'acceptable_accuracy': 2},
    ])
    def test_invalid_training_parameters(self, client, network_id, body):
        response = client.post(f'/api/networks/{network_id}/train', json=body)

        assert response.status_code == 400
        assert api_server.active_networks[network_id]['busy'] is False

    def test_training_task_completes(self, client, network_id, background_tasks):
        """Test running the recorded task to completion."""
        client.post(f'/api/networks/{network_id}/train', json={
            'training_size': 3,
            'epochs': 1
        })
        target, args = background_tasks[0]
        job_id = args[1]

        target(*args)

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert 0.0 <= job['accuracy'] <= 1.0

        info = api_server.active_networks[network_id]
        assert info['busy'] is False
        assert info['trained'] is True
        assert client.post(f'/api/networks/{network_id}/predict').status_code == 200

    def test_training_task_failure(self, client, network_id, background_tasks, monkeypatch):
        """Test that a failing job is marked failed and frees the network."""
        client.post(f'/api/networks/{network_id}/train', json={'epochs': 1})
        target, args = background_tasks[0]
        job_id = args[1]

        def broken(*_args, **_kwargs):
            raise RuntimeError('boom')

        net = api_server.active_networks[network_id]['network']
        monkeypatch.setattr(net, 'train_on_dataset', broken)
        target(*args)

        job = api_server.training_jobs[job_id]
        assert job['status'] == 'failed'
        assert job['error'] == 'boom'
        assert api_server.active_networks[network_id]['busy'] is False

    def test_unknown_job(self, client):
        assert client.get('/api/training/missing').status_code == 404
