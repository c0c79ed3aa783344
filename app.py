from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException
from sqlalchemy import text
from datetime import datetime
from logging.handlers import RotatingFileHandler
import logging
import os
import click

from config import get_config
from models import db
from extensions import jwt, bcrypt, cors, limiter

# ============================================
# Logging
# ============================================

def setup_logging(app):
    """
    File logging for non-debug runs

    app.log gets INFO and above, error.log only errors; both rotate at 10MB.
    Handlers go on the root logger so module loggers are captured too.
    """
    if app.debug or app.testing:
        return

    log_dir = app.config.get('LOG_DIR', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.addHandler(info_handler)
    root.addHandler(error_handler)
    root.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    app.logger.info('Application startup')

# ============================================
# JWT callbacks
# ============================================

def register_jwt_callbacks(app):
    from auth import is_token_revoked

    @jwt.token_in_blocklist_loader
    def check_if_token_revoked(jwt_header, jwt_payload):
        return is_token_revoked(jwt_payload)

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
        return jsonify({
            'error': 'token_expired',
            'message': 'The token has expired. Please refresh your token or login again.'
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
        return jsonify({
            'error': 'invalid_token',
            'message': 'Token validation failed. Please provide a valid token.'
        }), 401

    @jwt.unauthorized_loader
    def unauthorized_callback(error):
        app.logger.warning(f"Unauthorized access attempt from: {request.remote_addr}, error: {error}")
        return jsonify({
            'error': 'authorization_required',
            'message': 'Access token is required. Please provide an authorization token.'
        }), 401

    @jwt.revoked_token_loader
    def revoked_token_callback(jwt_header, jwt_payload):
        return jsonify({
            'error': 'token_revoked',
            'message': 'The token has been revoked. Please login again.'
        }), 401

# ============================================
# Error handlers
# ============================================

def register_error_handlers(app):

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'error': 'bad_request',
            'message': 'The request is malformed or invalid',
            'status': 400
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'The requested resource does not exist',
            'status': 404
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint',
            'status': 405
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.',
            'status': 429
        }), 429

    @app.errorhandler(500)
    def internal_server_error(error):
        """Full trace goes to the log, the client gets a generic message"""
        db.session.rollback()
        app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
        return jsonify({
            'error': 'internal_server_error',
            'message': 'An internal error occurred. Our team has been notified.',
            'status': 500
        }), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """Last resort for anything the views did not handle"""
        if isinstance(error, HTTPException):
            return jsonify({
                'error': (error.name or 'http_error').lower().replace(' ', '_'),
                'message': error.description,
                'status': error.code
            }), error.code

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)
        return jsonify({
            'error': 'unexpected_error',
            'message': 'An unexpected error occurred. Please try again later.',
            'status': 500
        }), 500

# ============================================
# CLI
# ============================================

def register_commands(app):

    @app.cli.command('init-db')
    def init_db():
        """Create tables and seed trackers and global permission templates."""
        from data import seed_trackers
        from permissions import seed_default_templates

        db.create_all()
        seed_trackers()
        seed_default_templates()
        db.session.commit()
        click.echo('Database initialized')

    @app.cli.command('purge-notifications')
    @click.option('--days', type=int, default=None,
                  help='Retention in days (defaults to NOTIFICATION_RETENTION_DAYS).')
    def purge_notifications(days):
        """Delete notifications older than the retention window."""
        from notifications import purge_old_notifications

        if days is None:
            days = app.config['NOTIFICATION_RETENTION_DAYS']
        purged = purge_old_notifications(days)
        click.echo(f'Purged {purged} notifications')

    @app.cli.command('purge-tokens')
    def purge_tokens():
        """Drop revoked-token rows older than the refresh token lifetime."""
        from auth import prune_token_blocklist

        pruned = prune_token_blocklist(app.config['JWT_REFRESH_TOKEN_EXPIRES'])
        click.echo(f'Pruned {pruned} revoked tokens')

# ============================================
# App factory
# ============================================

def create_app(config_class=None):
    app = Flask(__name__)
    config_class = config_class or get_config()
    config_class.validate()
    app.config.from_object(config_class)

    # Extensions
    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)
    cors.init_app(
        app,
        supports_credentials=True,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization']
    )

    setup_logging(app)
    register_jwt_callbacks(app)
    register_error_handlers(app)
    register_commands(app)

    # Blueprints
    from auth import auth_bp
    from projects import projects_bp
    from tasks import tasks_bp
    from data import data_bp
    from notifications import notifications_bp

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(projects_bp, url_prefix='/projects')
    app.register_blueprint(tasks_bp)
    app.register_blueprint(data_bp)
    app.register_blueprint(notifications_bp, url_prefix='/api')

    with app.app_context():
        db.create_all()

    # ============================================
    # Request/Response logging
    # ============================================

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        return response

    # ============================================
    # Health / index
    # ============================================

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        try:
            db.session.execute(text('SELECT 1'))
            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': datetime.utcnow().isoformat()
            }), 200
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    @app.route('/')
    def home():
        return jsonify({
            'message': 'Issue Tracker API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'auth': '/auth/{register,login,refresh,logout,me,change-password}',
                'projects': '/projects[/:id[/members|/permissions|/stats]]',
                'tasks': '/projects/:id/tasks[/:task_id], /tasks/my',
                'catalog': '/trackers, /projects/:id/{labels,statuses}',
                'notifications': '/api/notifications[/:id/read|/read-all|/clear|/stats]'
            }
        })

    return app


if __name__ == '__main__':
    # Use gunicorn or uwsgi in production
    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.getenv('FLASK_PORT', 8888))

    create_app().run(debug=debug_mode, port=port, host='0.0.0.0')
