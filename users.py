from flask import Blueprint, jsonify
from marshmallow import Schema, ValidationError, fields, validate, validates_schema
import logging

from auth import check_password, hash_password, login_required
from errors import AuthError, load_json
from storage import get_storage

users_bp = Blueprint('users', __name__)
logger = logging.getLogger(__name__)


class UpdateProfileSchema(Schema):
    """個人資料更新驗證"""
    first_name = fields.Str(validate=[
        validate.Length(min=1, max=100),
        validate.Regexp(r'\s*\S', error='Name must not be blank')
    ])
    last_name = fields.Str(validate=[
        validate.Length(min=1, max=100),
        validate.Regexp(r'\s*\S', error='Name must not be blank')
    ])
    avatar = fields.Str(allow_none=True, validate=validate.Length(max=500))
    current_password = fields.Str()
    new_password = fields.Str(validate=validate.Length(min=6, max=128, error='Password must be 6-128 characters'))

    @validates_schema
    def current_password_required(self, data, **kwargs):
        if data.get('new_password') and not data.get('current_password'):
            raise ValidationError('Current password is required to set a new password',
                                  field_name='current_password')


# ============================================
# 使用者列表 (指派任務時使用)
# ============================================

@users_bp.route('', methods=['GET'])
@login_required
def list_users(user):
    users = get_storage().list_users()
    return jsonify([u.to_dict() for u in users]), 200

# ============================================
# 更新個人資料 / 密碼
# ============================================

@users_bp.route('/profile', methods=['PATCH'])
@login_required
def update_profile(user):
    """更新姓名、頭像,或在驗證舊密碼後修改密碼"""
    result = load_json(UpdateProfileSchema)
    storage = get_storage()

    changes = {field: result[field] for field in ['first_name', 'last_name', 'avatar'] if field in result}

    if result.get('new_password'):
        if not check_password(user, result['current_password']):
            logger.warning(f"Wrong current password on profile update: {user.email}")
            raise AuthError('Current password is incorrect')
        changes['password_hash'] = hash_password(result['new_password'])

    if changes:
        storage.update_user(user, **changes)
        storage.commit()
        logger.info(f"User profile updated: {user.email}")

    return jsonify({'user': user.to_dict(include_memberships=True)}), 200
