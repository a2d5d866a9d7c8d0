import os
import json
import logging

from flask import Flask, jsonify
from flask_cors import CORS

from errors import AppError
from function_routes import functions_bp
from api_routes import api_bp
from admin_routes import admin_bp
import polling

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}},
     supports_credentials=False,
     allow_headers=["Content-Type", "Authorization", "apikey", "x-client-info", "x-supabase-api-version",
                    "X-Cron-Secret", "Stripe-Signature"],
     methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])

app.register_blueprint(functions_bp)
app.register_blueprint(api_bp)
app.register_blueprint(admin_bp)

REQUIRED_ENV_VARS = [
    'SUPABASE_URL', 'SUPABASE_SERVICE_ROLE_KEY', 'STRIPE_SECRET_KEY',
    'STRIPE_WEBHOOK_SECRET', 'MELISSA_CUSTOMER_ID', 'POSTGRID_API_KEY', 'RESEND_API_KEY',
]


@app.errorhandler(AppError)
def handle_app_error(error):
    if error.status_code >= 500:
        logger.error(f"{type(error).__name__}: {error.message}")
    return jsonify(error.to_dict()), error.status_code


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({'status': 'healthy'}), 200


@app.cli.command('poll-new-movers')
def poll_new_movers_command():
    """Run one new-mover polling pass (for cron)."""
    result = polling.poll_new_movers()
    logger.info(f"Polling result: {json.dumps(result)}")


if __name__ == '__main__':
    # Validate required environment variables
    missing_vars = [var for var in REQUIRED_ENV_VARS if not os.environ.get(var)]

    if missing_vars:
        logger.error(f"Missing required environment variables: {', '.join(missing_vars)}")
        exit(1)

    app.run(debug=False, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
