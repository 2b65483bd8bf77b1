"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition.

This module provides endpoints for:
- Classifying hand-drawn digits with the sparse network ensemble
- Inspecting the network files available to the server
- Reloading the ensemble after network files change
- Serving the drawing front end

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket predictions
- Gevent for the SocketIO server and threaded network loading
- Matplotlib for rendering the classified input
"""

import os
import sys
import time
import base64
import logging
from io import BytesIO
from typing import Any, Dict, Optional, Tuple

import numpy as np
from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS
from flask_socketio import SocketIO, emit

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from polynet.classifier import DigitClassifier, PredictionResult
from polynet.model_store import list_saved_networks, get_network_metadata

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
                            'socketio.server', 'werkzeug', 'matplotlib']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('polynet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
        logging.getLogger('matplotlib').setLevel(logging.WARNING)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__, static_folder='static')
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

MODELS_DIR = os.getenv('MODELS_DIR', 'models')

# Side length of the square drawings sent by the front end
IMAGE_SIDE = 28

classifier = DigitClassifier(MODELS_DIR)


# ============================================================================
# MODEL LOADING
# ============================================================================

def load_classifier() -> bool:
    """
    Load the ten digit networks into the global classifier.

    Failures are logged and leave the server running without models, so the
    status endpoint can report the problem.

    Returns:
        bool: True if all networks loaded
    """
    global classifier

    candidate = DigitClassifier(MODELS_DIR)
    try:
        candidate.load_models()
    except Exception as e:
        logger.exception(f"Error loading digit networks from {MODELS_DIR}: {e}")
        return False

    classifier = candidate
    return True


load_classifier()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def parse_pixels(data: Any) -> Tuple[Optional[np.ndarray], Optional[str]]:
    """
    Validate the pixel payload of a prediction request.

    Returns:
        tuple: (pixels, None) on success or (None, error message)
    """
    if not isinstance(data, dict):
        return None, 'Request body must be a JSON object'

    pixels = data.get('pixels')
    if not isinstance(pixels, list) or not pixels:
        return None, 'pixels must be a non-empty list of numbers'

    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in pixels):
        return None, 'pixels must contain only numbers'

    return np.asarray(pixels, dtype=np.float64), None


def create_digit_image(pixels: np.ndarray, predicted: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        pixels: Square image flattened row-major
        predicted: The digit the ensemble predicted (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    side = int(round(np.sqrt(pixels.size)))
    if side * side != pixels.size:
        side = IMAGE_SIDE

    plt.figure(figsize=(3, 3))
    plt.imshow(np.resize(pixels, (side, side)), cmap='gray')
    plt.title(f"Predicted: {predicted}")
    plt.axis('off')

    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


def run_prediction(pixels: np.ndarray, include_image: bool = False) -> Dict[str, Any]:
    """Classify pixels with the global classifier and build the response body."""
    start_time = time.perf_counter()
    result: PredictionResult = classifier.predict(pixels)
    elapsed_ms = (time.perf_counter() - start_time) * 1000.0

    response = result.to_dict()
    response['processing_time_ms'] = elapsed_ms
    if include_image:
        response['image_data'] = create_digit_image(pixels, result.predicted_digit)
    return response


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and whether the ensemble is ready."""
    return jsonify({
        'status': 'online',
        'models_loaded': classifier.loaded,
        'models_dir': MODELS_DIR,
        'thresholds': classifier.thresholds() if classifier.loaded else []
    }), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List the network files available in the model directory."""
    networks = list_saved_networks(MODELS_DIR)
    logger.debug(f"Listing {len(networks)} network file(s)")
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<name>', methods=['GET'])
def get_network(name: str):
    """Return metadata for one network file."""
    metadata = get_network_metadata(name, MODELS_DIR)
    if metadata is None:
        logger.warning(f"Metadata requested for unknown network: {name}")
        return jsonify({'error': 'Network not found'}), 404
    return jsonify(metadata), 200


@app.route('/api/predict', methods=['POST'])
def predict_digit():
    """
    Classify a drawn digit.

    Request body:
        {
            'pixels': [0.0, 0.1, ...],  # 784 grayscale values
            'include_image': false      # optional
        }

    Returns:
        JSON with predicted_digit, confidence and per-digit scores
    """
    if not classifier.loaded:
        return jsonify({'error': 'Models not loaded yet'}), 503

    data = request.get_json(silent=True)
    pixels, error = parse_pixels(data)
    if error:
        logger.warning(f"Rejected prediction request: {error}")
        return jsonify({'error': error}), 400

    try:
        response = run_prediction(pixels, bool(data.get('include_image', False)))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.exception(f"Error making prediction: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    logger.info(
        f"Predicted digit {response['predicted_digit']} "
        f"in {response['processing_time_ms']:.2f} ms"
    )
    return jsonify(response), 200


@app.route('/api/models/reload', methods=['POST'])
def reload_models():
    """Reload all ten networks from the model directory."""
    if not load_classifier():
        return jsonify({'error': 'Failed to load models'}), 500

    return jsonify({
        'models_loaded': True,
        'models_dir': MODELS_DIR
    }), 200


# ============================================================================
# WEBSOCKET EVENTS
# ============================================================================

@socketio.on('predict')
def handle_predict(data: Any) -> None:
    """Classify pixels sent over the socket and reply to the sender."""
    if not classifier.loaded:
        emit('prediction_error', {'error': 'Models not loaded yet'})
        return

    pixels, error = parse_pixels(data)
    if error:
        emit('prediction_error', {'error': error})
        return

    try:
        emit('prediction_result', run_prediction(pixels))
    except ValueError as e:
        emit('prediction_error', {'error': str(e)})


# ============================================================================
# STATIC FILE SERVING
# ============================================================================

@app.route('/')
def index():
    """Serve the main frontend page."""
    return send_from_directory(app.static_folder, 'index.html')


@app.route('/<path:path>')
def serve_static(path: str):
    """Serve static files (CSS, JS, images, etc.)."""
    return send_from_directory(app.static_folder, path)

# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    static_dir = os.path.join(os.path.dirname(__file__), 'static')
    if not os.path.exists(static_dir):
        os.makedirs(static_dir)
        logger.info(f"Created static directory: {static_dir}")

    is_cloud = bool(os.environ.get('RAILWAY_STATIC_URL') or os.environ.get('PORT'))
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
