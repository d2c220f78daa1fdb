"""HTTP entrypoint for the seat reservation backend."""

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import atexit
import logging
import math
import os
import signal
import threading
from dotenv import load_dotenv
from typing import Any, Dict, List, Optional, Tuple

load_dotenv()
from database_manager import DatabaseManager
from domain import HoldConflict
from errors import (DuplicateScreeningError, ExpiredHoldError, NotFoundError, ReservationConflict,
                    SeatReservationError, StoreUnavailableError, ValidationError)
from orchestrator import ReservationOrchestrator

logger = logging.getLogger(__name__)

GENERIC_ERROR = "something went wrong, please try again"
DEMO_SCREENING_ID = "avengers_2026_7pm"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def settings_from_env() -> Dict[str, Any]:
    return {
        "DATABASE_URL": os.getenv("DATABASE_URL"),
        "HOLD_TTL_SECONDS": _env_int("HOLD_TTL_SECONDS", 600),
        "MIN_HOLD_SECONDS": _env_int("MIN_HOLD_SECONDS", 60),
        "MAX_HOLD_SECONDS": _env_int("MAX_HOLD_SECONDS", 1800),
        "PAYMENT_TIMEOUT_SECONDS": _env_int("PAYMENT_TIMEOUT_SECONDS", 1800),
        "SWEEP_INTERVAL_SECONDS": _env_int("SWEEP_INTERVAL_SECONDS", 10),
        "DEMO_SCREENING": os.getenv("DEMO_SCREENING", "1").lower() not in ("0", "false", "no"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
    }


api = Blueprint("api", __name__)


def get_orchestrator() -> ReservationOrchestrator:
    return current_app.extensions["reservations"]


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[str, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def validate_seat_ids(seat_ids: Any) -> Tuple[Optional[List[str]], Optional[Tuple[str, int]]]:
    """Validate seat labels and return them trimmed."""
    if not isinstance(seat_ids, list):
        return None, bad_request("seat_ids must be provided as a non-empty JSON array")

    if len(seat_ids) == 0:
        return None, bad_request("seat_ids must contain at least one seat")

    normalized: List[str] = []
    for index, seat in enumerate(seat_ids):
        if not isinstance(seat, str):
            return None, bad_request("each seat_id must be a string", details={"index": index})
        trimmed = seat.strip()
        if not trimmed:
            return None, bad_request("seat_ids must not contain empty strings", details={"index": index})
        normalized.append(trimmed)

    if len(set(normalized)) != len(normalized):
        return None, bad_request("seat_ids must not contain duplicates")

    return normalized, None


def parse_hold_duration(data: Dict[str, Any]):
    """Clamp the requested hold duration to the configured window."""
    config = current_app.config
    low, high = config["MIN_HOLD_SECONDS"], config["MAX_HOLD_SECONDS"]
    message = f"hold_duration_seconds must be an integer between {low} and {high} seconds"

    if 'hold_duration_seconds' not in data:
        return max(low, min(config["HOLD_TTL_SECONDS"], high)), None

    duration_raw = data['hold_duration_seconds']
    if isinstance(duration_raw, bool):  # Reject boolean masquerading as int
        return None, bad_request(message)
    if isinstance(duration_raw, (int, float)):
        if not math.isfinite(duration_raw):
            return None, bad_request(message)
        duration_int = int(duration_raw)
    elif isinstance(duration_raw, str) and duration_raw.isdigit():
        duration_int = int(duration_raw)
    else:
        return None, bad_request(message)

    return max(low, min(duration_int, high)), None


# Error mapping

@api.errorhandler(ValidationError)
def handle_validation_error(error):
    return jsonify({"error": str(error)}), 400


@api.errorhandler(NotFoundError)
def handle_not_found(error):
    return jsonify({"error": str(error)}), 404


@api.errorhandler(ExpiredHoldError)
def handle_expired_hold(error):
    return jsonify({"error": "your hold has expired, please select your seats again",
                    "hold_id": str(error.hold_id)}), 409


@api.errorhandler(ReservationConflict)
def handle_reservation_conflict(error):
    return jsonify({"error": str(error), "retryable": True,
                    "seat_ids": [seat.label for seat in error.seat_ids]}), 409


@api.errorhandler(StoreUnavailableError)
def handle_store_unavailable(error):
    logger.error(f"Store unavailable: {error}")
    return jsonify({"error": GENERIC_ERROR}), 500


@api.errorhandler(SeatReservationError)
def handle_engine_error(error):
    logger.error(f"Unhandled engine error: {error}")
    return jsonify({"error": GENERIC_ERROR}), 500


@api.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    logger.exception(f"Unexpected error: {error}")
    return jsonify({"error": GENERIC_ERROR}), 500


# API Endpoints

@api.route('/screenings/<screening_id>/initialize', methods=['POST'])
def initialize_screening(screening_id):
    """Create a new screening with either an explicit layout or a seat count."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    if 'price' not in data:
        return bad_request("price is required")

    try:
        screening = get_orchestrator().create_screening(
            screening_id,
            price=data['price'],
            rows=data.get('rows'),
            seats_per_row=data.get('seats_per_row'),
            total_seats=data.get('total_seats'),
            film_title=data.get('film_title') or "",
            room=data.get('room') or "",
            is_active=data.get('is_active', True),
        )
    except DuplicateScreeningError as e:
        return jsonify({"error": str(e)}), 409

    return jsonify({
        "message": f"screening initialized with {screening.total_seats} seats",
        "screening_id": screening.screening_id,
        "seat_count": screening.total_seats,
        "rows": list(screening.rows),
        "price": str(screening.price),
    }), 201


@api.route('/screenings/<screening_id>', methods=['PATCH'])
def update_screening(screening_id):
    """Change the price or the activation flag of a screening."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    screening = get_orchestrator().update_screening(screening_id, price=data.get('price'),
                                                    is_active=data.get('is_active'))
    logger.info(f"Screening {screening_id} updated: price={screening.price}, active={screening.is_active}")
    return jsonify({
        "screening_id": screening.screening_id,
        "price": str(screening.price),
        "is_active": screening.is_active,
    })


@api.route('/screenings/<screening_id>/seats', methods=['GET'])
def get_seat_status(screening_id):
    """Return the live seat summary for a screening."""
    return jsonify(get_orchestrator().seat_availability(screening_id))


@api.route('/screenings/<screening_id>/hold', methods=['POST'])
def hold_seats(screening_id):
    """Place a temporary hold on the requested seats."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    seat_ids, seat_error = validate_seat_ids(data.get('seat_ids'))
    if seat_error:
        return seat_error

    user_id = data.get('user_id')
    if not isinstance(user_id, str) or not user_id.strip():
        return bad_request("user_id must be a non-empty string")

    duration, duration_error = parse_hold_duration(data)
    if duration_error:
        return duration_error

    result = get_orchestrator().start_booking(screening_id, seat_ids, user_id, duration)

    if isinstance(result, HoldConflict):
        return jsonify(result.to_dict()), 409

    logger.info(f"Hold created: {screening_id}, hold_id={result.hold_id}")
    return jsonify(result.to_dict()), 201


@api.route('/screenings/<screening_id>/release-hold', methods=['POST'])
def release_hold(screening_id):
    """Release a hold early, making seats available immediately."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    hold_id = data.get('hold_id')
    if not isinstance(hold_id, str) or not hold_id.strip():
        return bad_request("hold_id must be a non-empty string")

    hold = get_orchestrator().get_hold(hold_id.strip())
    if hold.screening_id != screening_id:
        return jsonify({"error": "hold not found"}), 404

    if get_orchestrator().release_hold(hold.hold_id):
        logger.info(f"Hold released: {screening_id}, hold_id={hold.hold_id}")
        return jsonify({"message": "hold released"}), 200
    return jsonify({"error": "hold not found"}), 404


@api.route('/holds/<hold_id>/checkout', methods=['POST'])
def checkout(hold_id):
    """Create the pending reservation that the payment step will settle."""
    reservation = get_orchestrator().checkout(hold_id)
    return jsonify(reservation.to_dict()), 201


@api.route('/payments/callback', methods=['POST'])
def payment_callback():
    """Payment gateway notification: settle a hold or a pending reservation."""
    data, error_response = require_json_object()
    if error_response:
        return error_response

    reference_id = data.get('reference_id') or data.get('reservation_id') or data.get('hold_id')
    if not isinstance(reference_id, str) or not reference_id.strip():
        return bad_request("reference_id must be a non-empty string")

    status = data.get('status')
    if status not in ('completed', 'failed'):
        return bad_request("status must be 'completed' or 'failed'")

    reservation = get_orchestrator().on_payment_result(
        reference_id,
        status == 'completed',
        transaction_id=data.get('transaction_id'),
        payment_method=data.get('payment_method'),
    )

    if reservation is None:
        return jsonify({"message": "payment failed, seats released"}), 200
    if status == 'completed':
        logger.info(f"Booking confirmed: {reservation.screening_id}, "
                    f"reservation_id={reservation.reservation_id}")
    return jsonify(reservation.to_dict()), 200


@api.route('/reservations/<reservation_id>', methods=['GET'])
def get_reservation(reservation_id):
    return jsonify(get_orchestrator().get_reservation(reservation_id).to_dict())


@api.route('/reservations/<reservation_id>/cancel', methods=['POST'])
def cancel_reservation(reservation_id):
    """Cancel a reservation and give its seats back."""
    reservation = get_orchestrator().cancel(reservation_id)
    return jsonify(reservation.to_dict()), 200


@api.route('/screenings/<screening_id>/audit', methods=['GET'])
def audit_screening(screening_id):
    report = get_orchestrator().audit(screening_id)
    return jsonify(report.to_dict()), 200


@api.route('/holds/sweep', methods=['POST'])
def sweep_holds():
    """Release expired holds and time out unpaid reservations now."""
    result = get_orchestrator().sweep()
    return jsonify(result.to_dict()), 200


@api.route('/reset', methods=['POST'])
def reset_all_screenings():
    """Administrative endpoint to reset the entire dataset."""
    if request.data:
        data, error_response = require_json_object()
        if error_response:
            return error_response
        if data:
            return bad_request("reset payload must be empty")

    result = get_orchestrator().reset()
    logger.info(
        "System reset: %s holds cleared, %s reservations cleared, %s seats reset",
        result.get('holds_cleared', 0),
        result.get('reservations_cleared', 0),
        result.get('seats_reset', 0)
    )
    return jsonify({"message": "all screenings reset", **result}), 200


@api.route('/health', methods=['GET'])
def health_check():
    """Expose backend connectivity and screening count."""
    status = get_orchestrator().health()
    return jsonify(status), 200 if status.get("status") == "healthy" else 503


class HoldSweeper:
    """Background thread that periodically releases expired holds."""

    def __init__(self, orchestrator: ReservationOrchestrator, interval_seconds: float):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="hold-sweeper", daemon=True)

    def start(self):
        self._thread.start()

    def stop(self, *args):
        if not self._stop.is_set():
            self._stop.set()
            logger.info("Stopping background sweep thread...")

    def stop_and_exit(self, signum, frame):
        """SIGTERM handler: stop sweeping, then let the default action terminate the process."""
        self.stop()
        signal.signal(signum, signal.SIG_DFL)
        os.kill(os.getpid(), signum)

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            try:
                result = self.orchestrator.sweep()
                if result.released_holds or result.expired_reservations:
                    logger.info(f"Background sweep: {len(result.released_holds)} holds released, "
                                f"{len(result.expired_reservations)} reservations timed out")
            except Exception as e:
                # Keep sweeping; the next pass retries whatever failed
                logger.error(f"Background sweep error: {e}")
        logger.info("Sweep thread terminated gracefully.")


def initialize_demo_screening(orchestrator: ReservationOrchestrator):
    """Create an example screening so local demos have usable data."""
    try:
        orchestrator.create_screening(DEMO_SCREENING_ID, rows="ABCDE", seats_per_row=10, price="12.50",
                                      film_title="Avengers", room="Room 1")
        logger.info(f"Pre-initialized demo screening: {DEMO_SCREENING_ID}")
    except ValidationError:
        logger.info(f"Demo screening already exists: {DEMO_SCREENING_ID}")


def create_app(config: Optional[Dict[str, Any]] = None, orchestrator: Optional[ReservationOrchestrator] = None):
    settings = settings_from_env()
    settings.update(config or {})

    logging.basicConfig(level=settings["LOG_LEVEL"])

    app = Flask(__name__)
    app.config.update(settings)
    CORS(app)

    if orchestrator is None:
        common = {
            "hold_ttl_seconds": settings["HOLD_TTL_SECONDS"],
            "payment_timeout_seconds": settings["PAYMENT_TIMEOUT_SECONDS"],
        }
        if settings["DATABASE_URL"]:
            orchestrator = ReservationOrchestrator.with_database(DatabaseManager(settings["DATABASE_URL"]), **common)
        else:
            logger.warning("DATABASE_URL not set; using the in-memory backend")
            orchestrator = ReservationOrchestrator.in_memory(**common)
    app.extensions["reservations"] = orchestrator

    if settings["DEMO_SCREENING"]:
        initialize_demo_screening(orchestrator)

    if settings["SWEEP_INTERVAL_SECONDS"] > 0:
        sweeper = HoldSweeper(orchestrator, settings["SWEEP_INTERVAL_SECONDS"])
        sweeper.start()
        app.extensions["hold_sweeper"] = sweeper
        # Signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, sweeper.stop_and_exit)
        atexit.register(sweeper.stop)

    app.register_blueprint(api)
    return app


if __name__ == '__main__':
    app = create_app()

    logger.info("""
    ================================
    SEAT RESERVATION ENGINE
    ================================
    Demo screening: avengers_2026_7pm (50 seats)
    Concurrency: per-seat compare-and-set, ordered acquisition
    ================================
    """)

    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
