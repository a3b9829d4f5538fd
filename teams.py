from flask import Blueprint, jsonify
from marshmallow import Schema, fields, pre_load, validate
import logging

from auth import has_admin_role, login_required
from errors import ForbiddenError, NotFoundError, load_json
from models import ROLES
from storage import get_storage

teams_bp = Blueprint('teams', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateTeamSchema(Schema):
    """建立團隊驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Team name is required'}
    )


class AddMemberSchema(Schema):
    """新增成員驗證"""
    user_id = fields.Int(required=True)
    role = fields.Str(validate=validate.OneOf(ROLES), load_default='member')

    @pre_load
    def lowercase_role(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get('role'), str):
            data = dict(data, role=data['role'].lower())
        return data

# ============================================
# 輔助函數
# ============================================

def get_team_or_404(team_id):
    team = get_storage().get_team(team_id)
    if not team:
        raise NotFoundError('Team not found')
    return team


def serialize_team(team, user):
    data = team.to_dict(include_members=True)
    my_membership = next((m for m in team.members if m.user_id == user.id), None)
    data['my_role'] = my_membership.role if my_membership else None
    return data

# ============================================
# 查詢我的團隊
# ============================================

@teams_bp.route('', methods=['GET'])
@login_required
def get_my_teams(user):
    """查詢我參與的所有團隊 (包含成員列表)"""
    teams = get_storage().list_teams_for_user(user.id)
    return jsonify([serialize_team(team, user) for team in teams]), 200

# ============================================
# 建立團隊
# ============================================

@teams_bp.route('', methods=['POST'])
@login_required
def create_team(user):
    """建立新團隊,建立者自動成為 admin 成員"""
    if not has_admin_role(user):
        raise ForbiddenError('Only admins can create teams')

    result = load_json(CreateTeamSchema)
    storage = get_storage()

    team = storage.create_team(result['name'].strip(), user)
    storage.commit()

    logger.info(f"Team created: {team.name} by user {user.email}")

    return jsonify(serialize_team(storage.get_team(team.id), user)), 201

# ============================================
# 刪除團隊
# ============================================

@teams_bp.route('/<int:team_id>', methods=['DELETE'])
@login_required
def delete_team(user, team_id):
    """刪除團隊 (只有團隊 admin 可以),成員與邀請會一併刪除"""
    team = get_team_or_404(team_id)

    if not has_admin_role(user, team.id):
        raise ForbiddenError('Only team admins can delete teams')

    team_name = team.name
    storage = get_storage()
    storage.delete_team(team)
    storage.commit()

    logger.info(f"Team deleted: {team_name} by user {user.email}")

    return jsonify({'message': 'Team deleted successfully'}), 200

# ============================================
# 團隊成員管理
# ============================================

@teams_bp.route('/<int:team_id>/members', methods=['GET'])
@login_required
def get_team_members(user, team_id):
    """取得團隊成員列表 (成員才能看)"""
    team = get_team_or_404(team_id)
    storage = get_storage()

    if not storage.get_membership(user.id, team.id) and not has_admin_role(user, team.id):
        raise ForbiddenError('Permission denied')

    members = storage.list_memberships(team.id)
    return jsonify({
        'members': [{
            'id': m.id,
            'role': m.role,
            'joined_at': m.created_at.isoformat(),
            'user': m.user.summary()
        } for m in members],
        'total': len(members)
    }), 200


@teams_bp.route('/<int:team_id>/members', methods=['POST'])
@login_required
def add_team_member(user, team_id):
    """新增團隊成員 (團隊 admin 才能操作)"""
    team = get_team_or_404(team_id)

    if not has_admin_role(user, team.id):
        raise ForbiddenError('Only team admins can add members')

    result = load_json(AddMemberSchema)
    storage = get_storage()

    member_user = storage.get_user(result['user_id'])
    if not member_user:
        raise NotFoundError('User not found')

    membership = storage.create_membership(member_user.id, team.id, result['role'])
    storage.commit()

    logger.info(f"Member added to team {team.id}: user {member_user.email}")

    return jsonify({
        'message': 'Member added successfully',
        'member': {
            'id': membership.id,
            'role': membership.role,
            'user': member_user.summary()
        }
    }), 201
