"""
TripLedger - Flask Application

Odometer continuity corrections and trip anomaly flags over a JSON API.
"""

import logging

from config import Config
from database import SessionLocal, create_schema, engine
from database import init_app as init_database
from exceptions import LedgerError
from extensions import limiter
from flask import Flask, jsonify
from routes import register_blueprints
from utils.error_codes import ErrorCode, StructuredError
from utils.wide_events import configure_logging
from werkzeug.exceptions import HTTPException

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
configure_logging()
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)

# Database setup (shared with blueprints through database.get_db)
Session = SessionLocal
init_database(app)

limiter.init_app(app)
register_blueprints(app)


# ============================================================================
# Error handling
# ============================================================================

@app.errorhandler(LedgerError)
def handle_ledger_error(error):
    """Map domain errors to their structured code and HTTP status."""
    structured = StructuredError.from_exception(error)
    if structured.metadata['alert']:
        logger.error(f"{structured}: {error.details}")
    else:
        logger.info(f"{structured}: {error.details}")
    return jsonify(structured.to_response()), structured.http_status


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return jsonify({'error': error.description, 'code': str(error.code), 'details': {}}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    logger.exception(f"Unhandled error: {error}")
    structured = StructuredError(ErrorCode.E500_INTERNAL_SERVER_ERROR, 'Internal server error')
    return jsonify(structured.to_response()), structured.http_status


@app.cli.command('init-db')
def init_db_command():
    """Create database tables."""
    create_schema()
    logger.info(f"Schema ready on {engine.url.render_as_string(hide_password=True)}")


# ============================================================================
# Main
# ============================================================================

if __name__ == '__main__':
    create_schema()
    app.run(host=Config.FLASK_HOST, port=Config.FLASK_PORT, debug=Config.DEBUG)
