"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for shape recognition.

This module provides endpoints for:
- Creating and managing neural networks
- Generating figures and recognizing them
- Training networks on one figure or, in the background, on a whole set
  with real-time progress updates via WebSockets
- Testing networks on freshly generated sets

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
"""

import os
import sys
import math
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional, Tuple

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from shapenet.generator import FEATURE_COUNT, ShapeGenerator
from shapenet.network import ConfigurationError, Network, NetworkError
from shapenet.sample import FigureType, Sample

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('shapenet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

DEFAULT_LAYER_SIZES = [FEATURE_COUNT, 40, len(FigureType)]

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Shared figure source for every request
generator = ShapeGenerator()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def label_name(label: Optional[int]) -> Optional[str]:
    """Readable name of a class index, None for an absent label."""
    if label is None:
        return None
    return FigureType(label).name.lower()


def create_figure_image(image: np.ndarray, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of the generated figure.

    Args:
        image: Binary raster indexed as [x, y]
        predicted: The class the network recognized
        actual: The class that was drawn

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(image.T, cmap='gray_r', origin='upper')
    plt.title(f"Predicted: {label_name(predicted)} | Actual: {label_name(actual)}")
    plt.axis('off')

    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


def sample_result(network_id: str, net: Network, sample: Sample) -> Dict[str, Any]:
    """JSON payload describing how a network handled a generated sample."""
    return {
        'network_id': network_id,
        'recognized_class': sample.recognized_class,
        'recognized_name': label_name(sample.recognized_class),
        'actual_class': int(sample.actual_class),
        'actual_name': label_name(sample.actual_class),
        'correct': sample.correct(),
        'estimated_error': sample.estimated_error(),
        'network_output': array_to_float_list(net.get_outputs()),
        'image_data': create_figure_image(
            generator.image, sample.recognized_class, sample.actual_class
        )
    }


def get_idle_network(network_id: str) -> Tuple[Optional[Network], Any]:
    """
    Look up a network that is free to be used.

    Returns:
        (network, None) on success, or (None, error response) if the network
        does not exist or is busy with a background training job
    """
    if network_id not in active_networks:
        logger.warning(f"Request for non-existent network: {network_id}")
        return None, (jsonify({'error': 'Network not found'}), 404)

    info = active_networks[network_id]
    if info['busy']:
        logger.warning(f"Request for network {network_id} while it is training")
        return None, (jsonify({'error': 'Network is busy training'}), 409)

    return info['network'], None


def is_integer(value: Any) -> bool:
    """True for JSON integers; JSON booleans are rejected."""
    return isinstance(value, int) and not isinstance(value, bool)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def accuracy_or_none(accuracy: Optional[float]) -> Optional[float]:
    """Map the undefined accuracy of an empty set to JSON null."""
    if accuracy is None or math.isnan(accuracy):
        return None
    return float(accuracy)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Returns counts of active networks and training jobs that are
    currently in progress (status='pending' or 'training').
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/generator', methods=['GET'])
def get_generator():
    """Return the generator settings."""
    return jsonify({
        'figure_count': generator.figure_count,
        'figure_size': generator.figure_size,
        'size_jitter': generator.size_jitter,
        'center_jitter': generator.center_jitter,
        'feature_count': FEATURE_COUNT
    }), 200


@app.route('/api/generator', methods=['PUT'])
def update_generator():
    """
    Change the number of figure classes the generator draws.

    Request body:
        {'figure_count': 3}

    Refused with 409 while a network in memory has fewer outputs than the
    requested count, since it could not represent the extra labels.
    """
    data = request.get_json(silent=True) or {}
    figure_count = data.get('figure_count')

    if not is_integer(figure_count):
        return jsonify({'error': 'figure_count must be an integer'}), 400

    too_narrow = [
        nid for nid, info in active_networks.items()
        if info['network'].sizes[-1] < figure_count
    ]
    if too_narrow:
        logger.warning(
            f"Refusing figure_count={figure_count}: "
            f"{len(too_narrow)} network(s) have fewer outputs"
        )
        return jsonify({
            'error': (
                f'{len(too_narrow)} network(s) have fewer than '
                f'{figure_count} outputs'
            ),
            'network_ids': too_narrow
        }), 409

    try:
        generator.figure_count = figure_count
    except ValueError as e:
        logger.warning(f"Invalid generator settings: {e}")
        return jsonify({'error': str(e)}), 400

    logger.info(f"Generator now draws {figure_count} figure class(es)")
    return get_generator()


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body (optional):
        {
            'layer_sizes': [400, 40, 4],
            'learning_rate': 0.01,
            'seed': 42
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', DEFAULT_LAYER_SIZES)
    learning_rate = data.get('learning_rate', 0.01)
    seed = data.get('seed')

    if not isinstance(layer_sizes, list):
        return jsonify({'error': 'layer_sizes must be a list'}), 400
    if not is_number(learning_rate) or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if seed is not None and not is_integer(seed):
        return jsonify({'error': 'seed must be an integer'}), 400

    try:
        net = Network(layer_sizes, learning_rate=learning_rate, seed=seed)

        # The generator fixes the sensor width and the number of classes
        if net.sizes[0] != FEATURE_COUNT or net.sizes[-1] != generator.figure_count:
            logger.warning(f"Architecture does not fit the generator: {layer_sizes}")
            return jsonify({
                'error': (
                    f'Invalid architecture. First layer must have {FEATURE_COUNT} '
                    f'neurons and last layer {generator.figure_count}.'
                )
            }), 400

        network_id = str(uuid.uuid4())
        active_networks[network_id] = {
            'network': net,
            'architecture': net.sizes,
            'trained': False,
            'accuracy': None,
            'busy': False
        }

        logger.info(f"Created network {network_id} with architecture {net.sizes}")

        return jsonify({
            'network_id': network_id,
            'architecture': net.sizes,
            'learning_rate': net.learning_rate,
            'status': 'created'
        }), 201

    except ConfigurationError as e:
        logger.warning(f"Invalid architecture requested: {layer_sizes}: {e}")
        return jsonify({'error': f'Invalid architecture. {e}'}), 400
    except Exception as e:
        logger.exception(f"Error creating network: {e}")
        return jsonify({'error': f'Failed to create network: {str(e)}'}), 500


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all networks in memory."""
    networks = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'busy': info['busy']
        }
        for nid, info in active_networks.items()
    ]
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from memory."""
    if network_id not in active_networks:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if active_networks[network_id]['busy']:
        return jsonify({'error': 'Network is busy training'}), 409

    del active_networks[network_id]
    logger.info(f"Deleted network {network_id}")

    return jsonify({'network_id': network_id, 'deleted': True}), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_figure(network_id: str):
    """
    Generate a random figure and let the network recognize it.

    Returns JSON with image, recognized and actual class, and network output.
    """
    net, error = get_idle_network(network_id)
    if error:
        return error

    try:
        sample = generator.generate_sample()
        net.predict(sample)
        return jsonify(sample_result(network_id, net, sample)), 200

    except NetworkError as e:
        logger.warning(f"Prediction failed for network {network_id}: {e}")
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.exception(f"Error during prediction: {e}")
        return jsonify({'error': f'Prediction failed: {str(e)}'}), 500


@app.route('/api/networks/<network_id>/train_one', methods=['POST'])
def train_one_figure(network_id: str):
    """
    Generate a random figure and train the network on it.

    Returns the same payload as predict plus the number of attempts.
    """
    net, error = get_idle_network(network_id)
    if error:
        return error

    try:
        sample = generator.generate_sample()
        attempts = net.train_one(sample)

        active_networks[network_id]['trained'] = True
        logger.debug(f"Network {network_id} trained on one figure in {attempts} attempt(s)")

        result = sample_result(network_id, net, sample)
        result['attempts'] = attempts
        result['converged'] = attempts < net.max_attempts
        return jsonify(result), 200

    except NetworkError as e:
        logger.warning(f"Training failed for network {network_id}: {e}")
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.exception(f"Error training on one figure: {e}")
        return jsonify({'error': f'Training failed: {str(e)}'}), 500


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background on a generated set.

    Request body (all optional):
        {
            'training_size': 100,
            'epochs': 50,
            'acceptable_accuracy': 0.9
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    net, error = get_idle_network(network_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    training_size = data.get('training_size', 100)
    epochs = data.get('epochs', 50)
    acceptable_accuracy = data.get('acceptable_accuracy', 0.9)

    if not is_integer(training_size) or training_size < 1:
        return jsonify({'error': 'training_size must be a positive integer'}), 400
    if not is_integer(epochs) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if (not is_number(acceptable_accuracy)
            or not 0.0 <= acceptable_accuracy <= 1.0):
        return jsonify({
            'error': 'acceptable_accuracy must be between 0.0 and 1.0'
        }), 400

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    # Other calls into this network are refused until the job ends
    active_networks[network_id]['busy'] = True

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"size={training_size}, epochs={epochs}, "
        f"acceptable_accuracy={acceptable_accuracy}"
    )

    try:
        socketio.start_background_task(
            train_network_task,
            network_id, job_id, training_size, epochs, acceptable_accuracy
        )
    except Exception as e:
        logger.exception(f"Error starting training job {job_id}: {e}")
        active_networks[network_id]['busy'] = False
        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)
        return jsonify({'error': f'Failed to start training: {str(e)}'}), 500

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    training_size: int,
    epochs: int,
    acceptable_accuracy: float
) -> None:
    """
    Background task that trains a network on a freshly generated set.

    Sends progress updates via WebSocket as training progresses.
    """
    net = active_networks[network_id]['network']

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'accuracy': data['accuracy'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress,
            'correct': data['correct'],
            'total': data['total']
        })

        gevent.sleep(0)

    def yield_to_other_tasks():
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        samples = generator.generate_set(training_size)
        accuracy = net.train_on_dataset(
            samples,
            epochs,
            acceptable_accuracy,
            callback=on_epoch_complete,
            yield_func=yield_to_other_tasks
        )

        active_networks[network_id]['trained'] = True
        active_networks[network_id]['accuracy'] = accuracy

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['progress'] = 100

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        if network_id in active_networks:
            active_networks[network_id]['busy'] = False


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>/test', methods=['POST'])
def test_network(network_id: str):
    """
    Measure accuracy on a freshly generated set without training.

    Request body (optional):
        {'test_size': 100}

    Returns:
        JSON with accuracy (null when the set is empty)
    """
    net, error = get_idle_network(network_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    test_size = data.get('test_size', 100)

    if not is_integer(test_size) or test_size < 0:
        return jsonify({'error': 'test_size must be a non-negative integer'}), 400

    try:
        samples = generator.generate_set(test_size)
        accuracy = net.test_on_dataset(samples)

        logger.info(f"Tested network {network_id} on {test_size} figure(s): {accuracy}")

        return jsonify({
            'network_id': network_id,
            'test_size': test_size,
            'accuracy': accuracy_or_none(accuracy)
        }), 200

    except NetworkError as e:
        logger.warning(f"Testing failed for network {network_id}: {e}")
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.exception(f"Error testing network: {e}")
        return jsonify({'error': f'Testing failed: {str(e)}'}), 500


@app.route('/api/networks/<network_id>/outputs', methods=['GET'])
def get_network_outputs(network_id: str):
    """Return the output layer's current activations."""
    net, error = get_idle_network(network_id)
    if error:
        return error

    return jsonify({
        'network_id': network_id,
        'network_output': array_to_float_list(net.get_outputs())
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
