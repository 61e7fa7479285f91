import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify
from flask_cors import CORS

from config import ConfigError, load_config
from docusign_client import DocuSignClient
from routes import api, limiter


def configure_logging(app, logs_dir):
    """Write application logs to a rotating file under logs_dir"""
    app.logger.setLevel(logging.INFO)
    try:
        os.makedirs(logs_dir, exist_ok=True)
        handler = RotatingFileHandler(os.path.join(logs_dir, 'backend.log'), maxBytes=2_000_000, backupCount=3)
        handler.setLevel(logging.INFO)
        formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
        handler.setFormatter(formatter)
        if not any(isinstance(h, RotatingFileHandler) for h in app.logger.handlers):
            app.logger.addHandler(handler)
    except OSError as e:
        # Fallback to default logger if filesystem not writable
        app.logger.warning(f"File logging disabled, cannot write to {logs_dir}: {e}")


def create_app(config, docusign_client=None, testing=False):
    """
    Build the Flask application

    Args:
        config: Config loaded at startup
        docusign_client: Client to use, defaults to DocuSignClient(config)
        testing: Disables rate limits and file logging

    Returns:
        Flask app
    """
    app = Flask(__name__)
    app.config['TESTING'] = testing
    app.config['RATELIMIT_ENABLED'] = not testing

    CORS(app,
         origins=["*"],
         expose_headers=['Content-Disposition'],
         allow_headers=['Content-Type'],
         methods=['GET', 'POST', 'PUT', 'OPTIONS'])

    limiter.init_app(app)

    if not testing:
        configure_logging(app, config.log_dir)

    app.extensions['docusign_client'] = docusign_client or DocuSignClient(config)
    app.register_blueprint(api)

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": e.description}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Rate limit exceeded", "details": str(e.description)}), 429

    return app


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(message)s')
    try:
        config = load_config()
    except ConfigError as e:
        logging.error(f"Invalid DocuSign configuration: {e}")
        if e.missing:
            logging.error("Create a .env file with: " + ', '.join(e.missing))
        sys.exit(1)

    logging.info("DocuSign environment variables validated successfully")
    app = create_app(config)

    app.logger.info(f"DocuSign API server running on port {config.port}")
    app.logger.info(f"Health check: http://localhost:{config.port}/api/health")
    app.logger.info(f"Main endpoint: POST http://localhost:{config.port}/api/docusign-signature")
    app.run(host='0.0.0.0', port=config.port)


if __name__ == '__main__':
    main()
