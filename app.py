from flask import Flask, current_app, request, jsonify
from sqlalchemy import text
import click
import logging
from logging.handlers import RotatingFileHandler
import os

from config import get_config
from errors import APIError
from extensions import bcrypt, cors, jwt, limiter
from mailer import Mailer
from models import db, utcnow
from storage import Storage, get_storage

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 掛在 root logger 上,各模組的 logging.getLogger(__name__) 也會寫進檔案
    """
    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.mkdir(log_dir)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(info_handler)
    root_logger.addHandler(error_handler)
    root_logger.setLevel(app.config['LOG_LEVEL'])
    app.logger.setLevel(app.config['LOG_LEVEL'])

    app.logger.info('Application startup')

# ============================================
# JWT 錯誤處理
# ============================================

def register_jwt_handlers():
    """
    缺少 token -> 401
    token 無效或過期 -> 403
    token 裡的使用者已不存在 -> 401
    """

    @jwt.user_lookup_loader
    def load_user(jwt_header, jwt_data):
        return get_storage().get_user_with_memberships(int(jwt_data['sub']))

    @jwt.user_lookup_error_loader
    def user_lookup_error_callback(jwt_header, jwt_data):
        current_app.logger.warning(f"Token for unknown user {jwt_data.get('sub')} from: {request.remote_addr}")
        return jsonify({
            'error': 'invalid_token',
            'message': 'Invalid token'
        }), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        current_app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
        return jsonify({
            'error': 'token_expired',
            'message': 'The token has expired. Please login again.'
        }), 403

    def has_empty_bearer():
        # "Authorization: Bearer " 沒有帶 token,當作缺少 token
        header = request.headers.get(current_app.config['JWT_HEADER_NAME'], '').strip()
        return header == current_app.config['JWT_HEADER_TYPE']

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        if has_empty_bearer():
            return unauthorized_callback(error)
        current_app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
        return jsonify({
            'error': 'invalid_token',
            'message': 'Token validation failed. Please provide a valid token.'
        }), 403

    @jwt.unauthorized_loader
    def unauthorized_callback(error):
        current_app.logger.warning(f"Unauthorized access attempt from: {request.remote_addr}, error: {error}")
        return jsonify({
            'error': 'authorization_required',
            'message': 'Access token is required. Please provide an authorization token.'
        }), 401

# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(APIError)
    def handle_api_error(error):
        """業務錯誤:rollback 後回傳對應的 status code"""
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'error': 'bad_request',
            'message': 'The request is malformed or invalid'
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'The requested resource does not exist'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint'
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.'
        }), 429

    @app.errorhandler(500)
    def internal_server_error(error):
        """不洩漏錯誤細節給前端,完整的 stack trace 只寫進 log"""
        db.session.rollback()
        app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
        return jsonify({
            'error': 'internal_server_error',
            'message': 'An internal error occurred. Our team has been notified.'
        }), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """最後的防線,捕捉所有沒被處理的 exception"""
        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)
        return jsonify({
            'error': 'unexpected_error',
            'message': 'An unexpected error occurred. Please try again later.'
        }), 500

# ============================================
# CLI 指令
# ============================================

def register_commands(app):

    @app.cli.command('init-db')
    def init_db():
        """建立所有資料表"""
        db.create_all()
        click.echo('Database tables created')

    @app.cli.command('make-admin')
    @click.argument('email')
    def make_admin(email):
        """把使用者升級成全域 admin"""
        storage = get_storage()
        user = storage.get_user_by_email(email)
        if not user:
            raise click.ClickException(f"User not found: {email}")

        storage.update_user(user, role='admin')
        storage.commit()
        app.logger.info(f"User promoted to admin: {user.email}")
        click.echo(f"{user.email} is now an admin")

# ============================================
# Application Factory
# ============================================

def create_app(config_class=None):
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # ============================================
    # 擴展初始化
    # ============================================

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)

    # 不要用 '*',只允許設定裡的來源
    cors.init_app(
        app,
        supports_credentials=True,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization']
    )

    app.extensions['storage'] = Storage(db)
    app.extensions['mailer'] = Mailer.from_config(app.config)

    if not app.debug and not app.testing:
        setup_logging(app)

    register_jwt_handlers()
    register_error_handlers(app)
    register_commands(app)

    # ============================================
    # 註冊 Blueprints
    # ============================================

    from auth import auth_bp
    from users import users_bp
    from tasks import tasks_bp
    from teams import teams_bp
    from invitations import invitations_bp

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(users_bp, url_prefix='/api/users')
    app.register_blueprint(tasks_bp, url_prefix='/api/tasks')
    app.register_blueprint(teams_bp, url_prefix='/api/teams')
    app.register_blueprint(invitations_bp, url_prefix='/api/invitations')

    # ============================================
    # Request/Response Logging
    # ============================================

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response

    # ============================================
    # Health Check
    # ============================================

    @app.route('/api/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """給 load balancer 或監控系統檢查服務與資料庫是否正常"""
        try:
            db.session.execute(text('SELECT 1'))
            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': utcnow().isoformat()
            }), 200
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    # ============================================
    # 資料庫初始化
    # ============================================

    with app.app_context():
        db.create_all()
        app.logger.info('Database tables created')

    return app

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # 在 production 環境不要用 Flask 內建的 server,應該用 gunicorn:
    #   gunicorn "app:create_app()"
    app = create_app()
    app.run(
        debug=app.config['DEBUG'],
        port=app.config['PORT'],
        host='0.0.0.0'
    )
