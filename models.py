
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()

# ============================================
# 列舉值
# ============================================

ROLES = ('admin', 'member')
TASK_STATUSES = ('TODO', 'IN_PROGRESS', 'DONE')
TASK_PRIORITIES = ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')


def utcnow():
    """資料庫一律存 naive UTC 時間"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value):
    """把有時區的 datetime 轉成 naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value else None


# ============================================
# 1. User 模型
# ============================================
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    username = db.Column(db.String(100), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='member')  # admin or member
    avatar = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # 關聯
    tasks_created = db.relationship('Task', foreign_keys='Task.creator_id', back_populates='creator', lazy=True)
    tasks_assigned = db.relationship('Task', foreign_keys='Task.assignee_id', back_populates='assignee', lazy=True)
    memberships = db.relationship('TeamMember', back_populates='user', lazy=True)
    sent_invitations = db.relationship('Invitation', back_populates='inviter', lazy=True)

    def summary(self):
        """任務卡片上顯示的精簡資料"""
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'avatar': self.avatar
        }

    def to_dict(self, include_memberships=False):
        # 永遠不回傳 password_hash
        data = self.summary()
        data.update({
            'role': self.role,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        })
        if include_memberships:
            data['memberships'] = [m.to_dict() for m in self.memberships]
        return data

# ============================================
# 2. Team 模型
# ============================================
class Team(db.Model):
    __tablename__ = 'teams'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # 關聯 (刪除團隊時一併刪除成員與邀請)
    creator = db.relationship('User')
    members = db.relationship('TeamMember', back_populates='team', lazy=True, cascade='all,delete-orphan')
    invitations = db.relationship('Invitation', back_populates='team', lazy=True, cascade='all,delete-orphan')

    def to_dict(self, include_members=False):
        data = {
            'id': self.id,
            'name': self.name,
            'created_by_id': self.created_by_id,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }
        if include_members:
            data['members'] = [{
                'id': m.id,
                'role': m.role,
                'joined_at': isoformat(m.created_at),
                'user': m.user.summary()
            } for m in self.members]
        return data

# ============================================
# 3. TeamMember 模型
# ============================================
class TeamMember(db.Model):
    __tablename__ = 'team_members'

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    # 團隊內的角色,跟 User.role 是不同的東西
    role = db.Column(db.String(20), nullable=False, default='member')
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    team = db.relationship('Team', back_populates='members')
    user = db.relationship('User', back_populates='memberships')

    # 同一個使用者在同一個團隊只能有一筆
    __table_args__ = (
        db.UniqueConstraint('team_id', 'user_id', name='unique_team_member'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'team_id': self.team_id,
            'user_id': self.user_id,
            'role': self.role,
            'created_at': isoformat(self.created_at)
        }

# ============================================
# 4. Task 模型
# ============================================
class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='TODO')
    priority = db.Column(db.String(20), nullable=False, default='MEDIUM')
    due_date = db.Column(db.DateTime, nullable=True)

    assignee_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    creator = db.relationship('User', foreign_keys=[creator_id], back_populates='tasks_created')
    assignee = db.relationship('User', foreign_keys=[assignee_id], back_populates='tasks_assigned')

    __table_args__ = (
        db.Index('idx_task_assignee_status', 'assignee_id', 'status'),
        db.Index('idx_task_creator', 'creator_id'),
        db.Index('idx_task_due_date', 'due_date'),
        db.Index('idx_task_created_at', 'created_at'),
    )

    def is_overdue(self, now=None):
        if not self.due_date or self.status == 'DONE':
            return False
        return self.due_date < (now or utcnow())

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'priority': self.priority,
            'due_date': isoformat(self.due_date),
            'creator_id': self.creator_id,
            'assignee_id': self.assignee_id,
            'creator': self.creator.summary(),
            'assignee': self.assignee.summary() if self.assignee else None,
            'is_overdue': self.is_overdue(),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }

# ============================================
# 5. Invitation 模型
# ============================================
class Invitation(db.Model):
    __tablename__ = 'invitations'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default='member')
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    inviter_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    accepted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    inviter = db.relationship('User', back_populates='sent_invitations')
    team = db.relationship('Team', back_populates='invitations')

    __table_args__ = (
        db.UniqueConstraint('team_id', 'email', name='unique_team_invitation'),
    )

    def is_expired(self, now=None):
        return self.expires_at < (now or utcnow())

    def to_dict(self):
        # token 只出現在邀請連結裡,不放進列表
        return {
            'id': self.id,
            'email': self.email,
            'role': self.role,
            'team_id': self.team_id,
            'inviter_id': self.inviter_id,
            'accepted': self.accepted,
            'expires_at': isoformat(self.expires_at),
            'created_at': isoformat(self.created_at)
        }
