from datetime import timedelta
import logging
import secrets

from flask import Blueprint, current_app, jsonify, request
from marshmallow import Schema, ValidationError, fields, pre_load, validate, validates_schema

from auth import (NormalizeEmailMixin, admin_team_ids, check_password, derive_username, has_admin_role,
                  hash_password, issue_token, login_required)
from errors import AuthError, ConflictError, ExpiredError, ForbiddenError, NotFoundError, ValidationFailed, load_json
from extensions import limiter
from models import ROLES, utcnow
from storage import get_storage

invitations_bp = Blueprint('invitations', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateInvitationSchema(NormalizeEmailMixin, Schema):
    """建立邀請驗證"""
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    role = fields.Str(validate=validate.OneOf(ROLES), load_default='member')
    team_id = fields.Int(allow_none=True)

    @pre_load
    def lowercase_role(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get('role'), str):
            data = dict(data, role=data['role'].lower())
        return data


class AcceptInvitationSchema(Schema):
    """
    接受邀請驗證

    新使用者需要 password / first_name / last_name,已存在的使用者只需要 password
    """
    password = fields.Str(validate=validate.Length(min=6, max=128, error='Password must be 6-128 characters'))
    confirm_password = fields.Str()
    first_name = fields.Str(validate=[
        validate.Length(min=1, max=100),
        validate.Regexp(r'\s*\S', error='Name must not be blank')
    ])
    last_name = fields.Str(validate=[
        validate.Length(min=1, max=100),
        validate.Regexp(r'\s*\S', error='Name must not be blank')
    ])
    username = fields.Str(validate=validate.Length(min=2, max=50, error='Username must be 2-50 characters'))

    @validates_schema
    def passwords_match(self, data, **kwargs):
        if 'confirm_password' in data and data.get('password') != data['confirm_password']:
            raise ValidationError("Passwords don't match", field_name='confirm_password')

# ============================================
# 輔助函數
# ============================================

def get_mailer():
    return current_app.extensions['mailer']


def invite_link_path(token):
    return f"/accept-invite/{token}"


def send_invitation_email(invitation, team, inviter):
    """
    寄送邀請信

    寄信失敗只記錄 log,不影響邀請本身
    """
    result = get_mailer().send_invitation(
        invitation.email,
        invitation.token,
        team.name,
        inviter_name=f"{inviter.first_name} {inviter.last_name}",
        expires_days=current_app.config['INVITATION_EXPIRES_DAYS']
    )
    if not result.get('sent'):
        logger.warning(f"Failed to send invitation email to {invitation.email}: {result.get('error')}")
    return bool(result.get('sent'))


def get_valid_invitation(token):
    """用 token 找邀請;不存在回 404,過期回 400 (過期的邀請不會被刪除)"""
    invitation = get_storage().get_invitation_by_token(token)
    if not invitation:
        raise NotFoundError('Invalid or expired invitation')
    if invitation.is_expired():
        raise ExpiredError('Invitation has expired')
    return invitation


def get_managed_invitation(user, invitation_id):
    invitation = get_storage().get_invitation(invitation_id)
    if not invitation:
        raise NotFoundError('Invitation not found')
    if not has_admin_role(user, invitation.team_id):
        raise ForbiddenError('Only team admins can manage invitations')
    return invitation

# ============================================
# 建立邀請
# ============================================

@invitations_bp.route('', methods=['POST'])
@login_required
def create_invitation(user):
    """
    邀請成員加入團隊

    沒指定 team_id 時使用第一個自己是 admin 的團隊
    """
    result = load_json(CreateInvitationSchema)
    storage = get_storage()

    team_id = result.get('team_id')
    if team_id is None:
        managed = admin_team_ids(user)
        if not managed:
            raise ForbiddenError('Only team admins can send invitations')
        team_id = managed[0]

    team = storage.get_team(team_id)
    if not team:
        raise NotFoundError('Team not found')
    if not has_admin_role(user, team.id):
        raise ForbiddenError('Only team admins can send invitations')

    email = result['email']
    existing_user = storage.get_user_by_email(email)
    if existing_user and storage.get_membership(existing_user.id, team.id):
        raise ConflictError('User is already a member of this team')

    existing = storage.get_team_invitation(team.id, email)
    if existing:
        if not existing.is_expired():
            raise ConflictError('An invitation is already pending for this email')
        # 過期的邀請直接換掉
        storage.delete_invitation(existing)

    invitation = storage.create_invitation(
        email=email,
        team_id=team.id,
        inviter_id=user.id,
        role=result['role'],
        token=secrets.token_hex(32),
        expires_at=utcnow() + timedelta(days=current_app.config['INVITATION_EXPIRES_DAYS'])
    )
    storage.commit()

    logger.info(f"Invitation created for {email} to team {team.id} by user {user.email}")

    email_sent = send_invitation_email(invitation, team, user)

    return jsonify({
        'message': 'Invitation sent successfully',
        'invitation': invitation.to_dict(),
        'invite_link': invite_link_path(invitation.token),
        'email_sent': email_sent
    }), 201

# ============================================
# 待處理的邀請
# ============================================

@invitations_bp.route('/pending', methods=['GET'])
@login_required
def list_pending_invitations(user):
    """列出自己管理的團隊中尚未過期的邀請 (最新的在前)"""
    managed = admin_team_ids(user)
    if not managed:
        raise ForbiddenError('Only team admins can view invitations')

    team_id = request.args.get('team_id', type=int)
    if team_id is not None:
        if team_id not in managed:
            raise ForbiddenError('Only team admins can view invitations')
        managed = [team_id]

    invitations = get_storage().list_pending_invitations(managed)
    return jsonify([invitation.to_dict() for invitation in invitations]), 200

# ============================================
# 重寄 / 撤銷
# ============================================

@invitations_bp.route('/<int:invitation_id>/resend', methods=['POST'])
@login_required
def resend_invitation(user, invitation_id):
    """重寄邀請信 (token 與到期時間不變)"""
    invitation = get_managed_invitation(user, invitation_id)
    if invitation.is_expired():
        raise ExpiredError('Invitation has expired')

    email_sent = send_invitation_email(invitation, invitation.team, user)
    logger.info(f"Invitation {invitation.id} resent by user {user.email}")

    return jsonify({
        'message': 'Invitation resent successfully',
        'email_sent': email_sent
    }), 200


@invitations_bp.route('/<int:invitation_id>', methods=['DELETE'])
@login_required
def revoke_invitation(user, invitation_id):
    """撤銷邀請"""
    invitation = get_managed_invitation(user, invitation_id)

    storage = get_storage()
    storage.delete_invitation(invitation)
    storage.commit()

    logger.info(f"Invitation {invitation_id} revoked by user {user.email}")

    return jsonify({'message': 'Invitation revoked successfully'}), 200

# ============================================
# 接受邀請 (不需要登入)
# ============================================

@invitations_bp.route('/accept/<token>', methods=['GET'])
def preview_invitation(token):
    """接受邀請頁面用來確認 token 是否有效"""
    invitation = get_valid_invitation(token)
    return jsonify({
        'email': invitation.email,
        'role': invitation.role,
        'team': {'id': invitation.team.id, 'name': invitation.team.name},
        'expires_at': invitation.expires_at.isoformat(),
        'user_exists': get_storage().get_user_by_email(invitation.email) is not None
    }), 200


@invitations_bp.route('/accept/<token>', methods=['POST'])
@limiter.limit("10 per minute")
def accept_invitation(token):
    """
    接受邀請

    1. email 還沒有帳號就建立新使用者 (role 使用邀請的 role);
       已經有帳號的話必須提供該帳號的密碼,避免拿到連結的人冒用身分
    2. 加入團隊
    3. 刪除邀請 (token 只能用一次)
    以上三步在同一個 transaction,任何一步失敗都會整個 rollback
    """
    invitation = get_valid_invitation(token)
    result = load_json(AcceptInvitationSchema, required=False)
    storage = get_storage()

    user = storage.get_user_by_email(invitation.email)
    if user:
        if not result.get('password') or not check_password(user, result['password']):
            logger.warning(f"Invitation accept without valid credentials for existing user: {user.email}")
            raise AuthError('Invalid credentials')
    else:
        missing = [f for f in ('password', 'first_name', 'last_name') if not result.get(f)]
        if missing:
            raise ValidationFailed(details={f: ['Missing data for required field.'] for f in missing})

        username = result.get('username')
        if username:
            if storage.get_user_by_username(username):
                raise ConflictError('Username already in use')
        else:
            username = derive_username(result['first_name'], result['last_name'], storage)

        user = storage.create_user(
            email=invitation.email,
            username=username,
            password_hash=hash_password(result['password']),
            first_name=result['first_name'],
            last_name=result['last_name'],
            role=invitation.role
        )

    storage.create_membership(user.id, invitation.team_id, invitation.role)
    storage.delete_invitation(invitation)
    storage.commit()

    logger.info(f"Invitation accepted: {user.email} joined team {invitation.team_id}")

    return jsonify({
        'message': 'Invitation accepted successfully',
        'user': user.to_dict(include_memberships=True),
        'token': issue_token(user)
    }), 200
