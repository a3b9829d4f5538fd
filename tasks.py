from datetime import datetime, time
from flask import Blueprint, current_app, jsonify, request
from marshmallow import Schema, fields, validate
import logging
import re

from auth import login_required
from errors import ForbiddenError, NotFoundError, ValidationFailed, load_json
from models import TASK_PRIORITIES, TASK_STATUSES, to_naive_utc
from storage import get_storage

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

DATE_ONLY = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class DueDateField(fields.DateTime):
    """接受完整的 ISO datetime,或只有日期 (視為 UTC 午夜)"""

    def _deserialize(self, value, attr, data, **kwargs):
        if isinstance(value, str) and DATE_ONLY.match(value.strip()):
            day = fields.Date()._deserialize(value.strip(), attr, data, **kwargs)
            return datetime.combine(day, time.min)
        return super()._deserialize(value, attr, data, **kwargs)


class CreateTaskSchema(Schema):
    """建立任務驗證"""
    title = fields.Str(
        required=True,
        validate=[
            validate.Length(min=1, max=255),
            validate.Regexp(r'\s*\S', error='Task title must not be blank')
        ],
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES), load_default='TODO')
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES), load_default='MEDIUM')
    due_date = DueDateField(allow_none=True)
    assignee_id = fields.Int(allow_none=True)


class UpdateTaskSchema(Schema):
    """更新任務驗證 (所有欄位都是選填)"""
    title = fields.Str(validate=[
        validate.Length(min=1, max=255),
        validate.Regexp(r'\s*\S', error='Task title must not be blank')
    ])
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES))
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES))
    due_date = DueDateField(allow_none=True)
    assignee_id = fields.Int(allow_none=True)

# ============================================
# 輔助函數
# ============================================

def visibility_scope(user):
    """scoped 模式回傳 user.id (只看自己相關的任務),all 模式回傳 None"""
    if current_app.config['TASK_VISIBILITY'] == 'all':
        return None
    return user.id


def can_view(task, user):
    return visibility_scope(user) is None or user.id in (task.creator_id, task.assignee_id)


def can_edit(task, user):
    # 只有建立者或負責人可以修改
    return user.id in (task.creator_id, task.assignee_id)


def ensure_assignee_exists(assignee_id):
    if assignee_id is not None and not get_storage().get_user(assignee_id):
        raise ValidationFailed('Assignee not found', details={'assignee_id': ['User does not exist']})


def get_task_or_404(task_id):
    task = get_storage().get_task(task_id)
    if not task:
        raise NotFoundError('Task not found')
    return task

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('', methods=['POST'])
@login_required
def create_task(user):
    """建立任務,建立者就是目前登入的使用者"""
    result = load_json(CreateTaskSchema)
    ensure_assignee_exists(result.get('assignee_id'))

    storage = get_storage()
    task = storage.create_task(
        title=result['title'].strip(),
        description=result.get('description'),
        status=result['status'],
        priority=result['priority'],
        due_date=to_naive_utc(result.get('due_date')),
        assignee_id=result.get('assignee_id'),
        creator_id=user.id
    )
    storage.commit()

    logger.info(f"Task created: {task.title} by user {user.email}")

    return jsonify(task.to_dict()), 201

# ============================================
# 查詢任務
# ============================================

@tasks_bp.route('', methods=['GET'])
@login_required
def list_tasks(user):
    """
    查詢任務列表 (最新建立的在前)

    可用 status / priority / assignee_id 篩選
    """
    tasks = get_storage().list_tasks(
        user_id=visibility_scope(user),
        status=request.args.get('status'),
        priority=request.args.get('priority'),
        assignee_id=request.args.get('assignee_id', type=int)
    )
    return jsonify([task.to_dict() for task in tasks]), 200


@tasks_bp.route('/stats', methods=['GET'])
@login_required
def task_stats(user):
    """任務統計 (dashboard 使用)"""
    stats = get_storage().task_stats(user.id, visible_to=visibility_scope(user))
    return jsonify(stats), 200


@tasks_bp.route('/<int:task_id>', methods=['GET'])
@login_required
def get_task(user, task_id):
    task = get_task_or_404(task_id)
    if not can_view(task, user):
        raise ForbiddenError("You don't have permission to view this task")
    return jsonify(task.to_dict()), 200

# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['PATCH'])
@login_required
def update_task(user, task_id):
    """
    更新任務

    狀態可以任意轉換 (包含 DONE -> TODO),沒有 workflow 限制
    """
    task = get_task_or_404(task_id)
    if not can_edit(task, user):
        raise ForbiddenError("You don't have permission to update this task")

    result = load_json(UpdateTaskSchema)
    if 'assignee_id' in result:
        ensure_assignee_exists(result['assignee_id'])
    if 'due_date' in result:
        result['due_date'] = to_naive_utc(result['due_date'])
    if 'title' in result:
        result['title'] = result['title'].strip()

    storage = get_storage()
    task = storage.update_task(task, **result)
    storage.commit()

    logger.info(f"Task {task_id} updated by user {user.email}: {sorted(result)}")

    return jsonify(task.to_dict()), 200

# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['DELETE'])
@login_required
def delete_task(user, task_id):
    """刪除任務 (只有建立者可以)"""
    task = get_task_or_404(task_id)
    if task.creator_id != user.id:
        raise ForbiddenError('Only the task creator can delete this task')

    storage = get_storage()
    storage.delete_task(task)
    storage.commit()

    logger.info(f"Task deleted: {task_id} by user {user.email}")

    return jsonify({'message': 'Task deleted successfully'}), 200
