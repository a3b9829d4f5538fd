from flask_bcrypt import Bcrypt
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# ============================================
# Flask 擴展 (在 create_app 裡 init_app)
# ============================================

jwt = JWTManager()
bcrypt = Bcrypt()
cors = CORS()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per day", "200 per hour"],
)
