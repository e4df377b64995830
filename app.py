"""HTTP entrypoint for the seat reservation backend."""

from flask import Flask, Blueprint, current_app, request, jsonify
from flask_cors import CORS
import atexit
import logging
import math
import signal
import threading
from typing import Any, Dict, Optional, Tuple

from catalog import StaticCatalog, grid_labels
from config import Settings
from database_manager import DatabaseManager
from errors import ReservationError
from payment import HttpPaymentCoordinator, PaymentCoordinator, SimulatedPaymentCoordinator
from reservation_engine import ReservationEngine
from sweeper import HoldSweeper

logger = logging.getLogger(__name__)

DEMO_SHOW_ID = "avengers_2026_7pm"
DEMO_SEATS = grid_labels("ABCDE", 10)

api = Blueprint('api', __name__)


def get_engine() -> ReservationEngine:
    return current_app.extensions['reservation_engine']


def get_settings() -> Settings:
    return current_app.extensions['reservation_settings']


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message, "code": "INVALID_REQUEST"}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def error_response(error: ReservationError):
    return jsonify(error.to_dict()), error.http_status


def respond(outcome: Tuple[Any, Optional[ReservationError]], status: int = 200):
    """Map an engine (result, error) pair onto an HTTP response."""
    result, error = outcome
    if error is not None:
        return error_response(error)
    return jsonify(result), status


def require_json_object(allow_empty: bool = False) -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if allow_empty and not request.data:
        return {}, None
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def parse_hold_duration(data: Dict[str, Any]) -> Tuple[Optional[int], Optional[Tuple[Any, int]]]:
    """Read hold_duration_seconds, clamped to the configured bounds."""
    settings = get_settings()
    bounds = f"between {settings.hold_min_seconds} and {settings.hold_max_seconds} seconds"
    if 'hold_duration_seconds' not in data:
        return settings.hold_duration_seconds, None

    duration_raw = data['hold_duration_seconds']
    if isinstance(duration_raw, bool):  # Reject boolean masquerading as int
        return None, bad_request(f"hold_duration_seconds must be an integer {bounds}")
    if isinstance(duration_raw, float) and not math.isfinite(duration_raw):
        return None, bad_request(f"hold_duration_seconds must be an integer {bounds}")
    if isinstance(duration_raw, (int, float)):
        duration_int = int(duration_raw)
    elif isinstance(duration_raw, str) and duration_raw.isdigit():
        duration_int = int(duration_raw)
    else:
        return None, bad_request(f"hold_duration_seconds must be an integer {bounds}")

    return settings.clamp_hold_duration(duration_int), None


# API Endpoints

@api.route('/shows/<show_id>/initialize', methods=['POST'])
def initialize_show(show_id):
    """Create a show's seat inventory, from the body's seat map or from the catalog."""
    data, error_response_ = require_json_object(allow_empty=True)
    if error_response_:
        return error_response_

    if 'seat_labels' in data:
        return respond(get_engine().initialize_show(show_id, data['seat_labels'], data.get('seat_price')), 201)
    return respond(get_engine().open_show(show_id), 201)


@api.route('/shows/<show_id>/seats', methods=['GET'])
def get_seat_status(show_id):
    """Return the live seat summary for a show."""
    return respond(get_engine().get_seat_status(show_id))


@api.route('/shows/<show_id>/hold', methods=['POST'])
def hold_seats(show_id):
    """Place a temporary hold on the requested seats."""
    data, error_response_ = require_json_object()
    if error_response_:
        return error_response_

    duration, duration_error = parse_hold_duration(data)
    if duration_error:
        return duration_error

    return respond(
        get_engine().request_booking(show_id, data.get('user_id'), data.get('seat_labels'), duration),
        201,
    )


@api.route('/holds/<hold_id>', methods=['GET'])
def get_hold(hold_id):
    return respond(get_engine().get_hold(hold_id))


@api.route('/holds/<hold_id>/confirm', methods=['POST'])
def confirm_hold(hold_id):
    """Pay for an active hold and convert it into a confirmed booking."""
    data, error_response_ = require_json_object(allow_empty=True)
    if error_response_:
        return error_response_

    payment_details = data.get('payment_details')
    if payment_details is not None and not isinstance(payment_details, dict):
        return bad_request("payment_details must be a JSON object")

    return respond(get_engine().confirm_booking(hold_id, payment_details))


@api.route('/holds/<hold_id>/release', methods=['POST'])
def release_hold(hold_id):
    """Release a hold early, making seats available immediately."""
    return respond(get_engine().release_hold(hold_id))


@api.route('/holds/sweep', methods=['POST'])
def sweep_holds():
    return jsonify({"expired": get_engine().sweep_expired()})


@api.route('/bookings/<booking_id>', methods=['GET'])
def get_booking(booking_id):
    return respond(get_engine().get_booking(booking_id))


@api.route('/bookings/<booking_id>/cancel', methods=['POST'])
def cancel_booking(booking_id):
    """Cancel a confirmed booking (refunding it) or an active hold."""
    return respond(get_engine().cancel_booking(booking_id))


@api.route('/bookings/<booking_id>/history', methods=['GET'])
def booking_history(booking_id):
    return respond(get_engine().booking_history(booking_id))


@api.route('/users/<user_id>/bookings', methods=['GET'])
def list_user_bookings(user_id):
    return respond(get_engine().list_bookings_for_user(user_id))


@api.route('/reset', methods=['POST'])
def reset_all_shows():
    """Administrative endpoint to reset the entire dataset."""
    data, error_response_ = require_json_object(allow_empty=True)
    if error_response_:
        return error_response_
    if data:
        return bad_request("reset payload must be empty")

    result, error = get_engine().reset_all()
    if error is not None:
        logger.error(f"System reset failed: {error.details.get('error')}")
        return error_response(error)

    logger.info(
        "System reset: %s holds cleared, %s bookings cleared, %s seats reset",
        result.get('holds_cleared', 0),
        result.get('bookings_cleared', 0),
        result.get('seats_reset', 0)
    )
    return jsonify({"message": "all shows reset", **result}), 200


@api.route('/health', methods=['GET'])
def health_check():
    """Expose the database connectivity and show count."""
    return jsonify(get_engine().db.health_check())


def build_payment_coordinator(settings: Settings) -> PaymentCoordinator:
    if settings.payment_gateway_url:
        return HttpPaymentCoordinator(settings.payment_gateway_url, timeout_seconds=settings.payment_timeout_seconds)
    return SimulatedPaymentCoordinator()


def initialize_demo_show(engine: ReservationEngine) -> None:
    """Create an example show so local demos have usable data."""
    if isinstance(engine.catalog, StaticCatalog) and engine.catalog.get_show(DEMO_SHOW_ID) is None:
        engine.catalog.add_show(DEMO_SHOW_ID, DEMO_SEATS, engine.settings.default_seat_price)
    result, error = engine.open_show(DEMO_SHOW_ID)
    if error is None:
        logger.info(f"✅ Pre-initialized demo show: {DEMO_SHOW_ID}")
    else:
        logger.info(f"ℹ️ Demo show not initialized: {error.message}")


def install_shutdown_hooks(sweeper: HoldSweeper) -> None:
    """Stop the sweeper on SIGTERM/SIGINT (Gunicorn, Docker, etc.) and at interpreter exit."""
    atexit.register(sweeper.stop)
    if threading.current_thread() is not threading.main_thread():
        return

    for signum in (signal.SIGTERM, signal.SIGINT):
        previous = signal.getsignal(signum)

        def handler(sig, frame, previous=previous):
            sweeper.stop(timeout=1)
            if callable(previous):
                previous(sig, frame)

        signal.signal(signum, handler)


def create_app(settings: Optional[Settings] = None, engine: Optional[ReservationEngine] = None,
               start_sweeper: bool = True) -> Flask:
    settings = settings or (engine.settings if engine else Settings.from_env())
    logging.basicConfig(level=settings.log_level)

    if engine is None:
        engine = ReservationEngine(
            DatabaseManager(settings.database_url),
            build_payment_coordinator(settings),
            catalog=StaticCatalog(),
            settings=settings,
        )

    app = Flask(__name__)
    CORS(app)
    app.extensions['reservation_engine'] = engine
    app.extensions['reservation_settings'] = settings
    app.register_blueprint(api)

    if settings.demo_show:
        initialize_demo_show(engine)

    sweeper = HoldSweeper(engine, settings.sweep_interval_seconds)
    app.extensions['hold_sweeper'] = sweeper
    if start_sweeper:
        sweeper.start()
        install_shutdown_hooks(sweeper)

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    app = create_app(settings)

    logger.info(f"""
    ================================
    SEAT RESERVATION ENGINE
    ================================
    Demo show: {DEMO_SHOW_ID} ({len(DEMO_SEATS)} seats)
    Database: {settings.database_url.split('://')[0]}
    Concurrency: per-show critical section + SELECT FOR UPDATE
    Hold duration: {settings.hold_duration_seconds}s
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
