from functools import wraps
import logging
import re

from flask import Blueprint, current_app, jsonify
from flask_jwt_extended import create_access_token, get_current_user as jwt_current_user, verify_jwt_in_request
from marshmallow import EXCLUDE, Schema, ValidationError, fields, pre_load, validate, validates_schema

from errors import AuthError, ConflictError, load_json
from extensions import bcrypt, limiter
from storage import get_storage

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class NormalizeEmailMixin:
    """email 一律去空白、轉小寫"""

    @pre_load
    def normalize_email(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get('email'), str):
            data = dict(data, email=data['email'].strip().lower())
        return data


class RegisterSchema(NormalizeEmailMixin, Schema):
    """註冊輸入驗證 (前端多送的欄位像 role 直接忽略)"""

    class Meta:
        unknown = EXCLUDE

    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=6, max=128, error='Password must be 6-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    confirm_password = fields.Str(required=True, error_messages={'required': 'Please confirm your password'})
    first_name = fields.Str(required=True, validate=[
        validate.Length(min=1, max=100),
        validate.Regexp(r'\s*\S', error='Name must not be blank')
    ])
    last_name = fields.Str(required=True, validate=[
        validate.Length(min=1, max=100),
        validate.Regexp(r'\s*\S', error='Name must not be blank')
    ])
    username = fields.Str(validate=validate.Length(min=2, max=50, error='Username must be 2-50 characters'))

    @validates_schema
    def passwords_match(self, data, **kwargs):
        if data.get('password') != data.get('confirm_password'):
            raise ValidationError("Passwords don't match", field_name='confirm_password')


class LoginSchema(NormalizeEmailMixin, Schema):
    """登入輸入驗證"""
    email = fields.Email(required=True)
    password = fields.Str(required=True)


# ============================================
# 密碼與 Token
# ============================================

def hash_password(password):
    return bcrypt.generate_password_hash(password).decode('utf-8')


def check_password(user, password):
    return bcrypt.check_password_hash(user.password_hash, password)


def issue_token(user):
    """
    簽發 session token

    payload 帶 {id, email, role},有效期由 JWT_ACCESS_TOKEN_EXPIRES 決定 (預設 24 小時)
    """
    return create_access_token(
        identity=str(user.id),
        additional_claims={'id': user.id, 'email': user.email, 'role': user.role}
    )


def derive_username(first_name, last_name, storage):
    """沒有提供 username 時用 first_last 產生,重複就加數字"""
    base = re.sub(r'\s+', '', f"{first_name}_{last_name}".lower())[:45] or 'user'
    candidate = base
    suffix = 1
    while storage.get_user_by_username(candidate):
        suffix += 1
        candidate = f"{base}{suffix}"
    return candidate


# ============================================
# 驗證 / 權限 (供其他模組使用)
# ============================================

def login_required(fn):
    """
    驗證 bearer token,並把目前的使用者當作第一個參數傳給 view

    使用者資料每次都從資料庫讀取,不依賴 token 裡的 claims
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        return fn(jwt_current_user(), *args, **kwargs)
    return wrapper


def has_admin_role(user, team_id=None):
    """
    檢查使用者是否有 admin 權限

    AUTHORIZATION_MODE = 'global': 看 user.role
    AUTHORIZATION_MODE = 'team': 看在該團隊的 membership role;
        team_id 為 None 時,只要是任何一個團隊的 admin 就算
    """
    if current_app.config['AUTHORIZATION_MODE'] == 'global':
        return user.role == 'admin'

    storage = get_storage()
    if team_id is None:
        return bool(storage.admin_team_ids(user.id))

    membership = storage.get_membership(user.id, team_id)
    return membership is not None and membership.role == 'admin'


def admin_team_ids(user):
    """使用者可以管理的團隊 id 列表"""
    storage = get_storage()
    if current_app.config['AUTHORIZATION_MODE'] == 'global':
        return storage.all_team_ids() if user.role == 'admin' else []
    return storage.admin_team_ids(user.id)


# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit("5 per hour")
def register():
    """
    使用者註冊

    同一個 transaction 裡建立使用者和他的個人團隊
    """
    result = load_json(RegisterSchema)
    storage = get_storage()

    if storage.get_user_by_email(result['email']):
        raise ConflictError('Email already in use')

    username = result.get('username')
    if username:
        if storage.get_user_by_username(username):
            raise ConflictError('Username already in use')
    else:
        username = derive_username(result['first_name'], result['last_name'], storage)

    user = storage.create_user(
        email=result['email'],
        username=username,
        password_hash=hash_password(result['password']),
        first_name=result['first_name'],
        last_name=result['last_name']
    )
    storage.create_team(f"{user.first_name}'s Team", user)
    storage.commit()

    logger.info(f"New user registered: {user.email}")

    return jsonify({
        'user': user.to_dict(include_memberships=True),
        'token': issue_token(user)
    }), 201

# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    """
    使用者登入

    不區分是 email 錯還是 password 錯,避免帳號枚舉攻擊
    """
    result = load_json(LoginSchema)
    user = get_storage().get_user_by_email(result['email'])

    if not user or not check_password(user, result['password']):
        logger.warning(f"Failed login attempt for email: {result['email']}")
        raise AuthError('Invalid credentials')

    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'user': user.to_dict(include_memberships=True),
        'token': issue_token(user)
    }), 200

# ============================================
# 取得當前使用者資訊
# ============================================

@auth_bp.route('/me', methods=['GET'])
@login_required
def get_me(user):
    """取得當前登入使用者的資訊"""
    return jsonify({'user': user.to_dict(include_memberships=True)}), 200
