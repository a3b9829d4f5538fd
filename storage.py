from datetime import timedelta
import logging

from flask import current_app
from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, selectinload

from errors import ConflictError
from models import Invitation, Task, Team, TeamMember, User, TASK_PRIORITIES, utcnow

logger = logging.getLogger(__name__)


def get_storage():
    """從 Flask app extensions 取得 Storage 實例 (不用 global variable)"""
    return current_app.extensions['storage']


class Storage:
    """
    資料存取層

    所有寫入只做 flush,由呼叫端決定何時 commit,
    這樣多個步驟 (例如接受邀請) 可以放在同一個 transaction
    """

    def __init__(self, db):
        self.db = db

    @property
    def session(self):
        return self.db.session

    # ============================================
    # Transaction
    # ============================================

    def flush(self):
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Integrity error on flush: {e.orig}")
            raise ConflictError() from e

    def commit(self):
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Integrity error on commit: {e.orig}")
            raise ConflictError() from e

    def rollback(self):
        self.session.rollback()

    # ============================================
    # User
    # ============================================

    def get_user(self, user_id):
        return self.session.get(User, user_id)

    def get_user_with_memberships(self, user_id):
        return User.query.options(selectinload(User.memberships)).filter_by(id=user_id).first()

    def get_user_by_email(self, email):
        return User.query.filter_by(email=email.strip().lower()).first()

    def get_user_by_username(self, username):
        return User.query.filter_by(username=username).first()

    def list_users(self):
        return User.query.order_by(User.first_name.asc(), User.last_name.asc(), User.id.asc()).all()

    def create_user(self, email, username, password_hash, first_name, last_name, role='member'):
        user = User(
            email=email.strip().lower(),
            username=username,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            role=role
        )
        self.session.add(user)
        self.flush()
        return user

    def update_user(self, user, **fields):
        for field, value in fields.items():
            setattr(user, field, value)
        self.flush()
        return user

    # ============================================
    # Team & Membership
    # ============================================

    def create_team(self, name, creator):
        """建立團隊,建立者自動成為唯一的 admin 成員"""
        team = Team(name=name, created_by_id=creator.id)
        self.session.add(team)
        self.flush()

        membership = TeamMember(team_id=team.id, user_id=creator.id, role='admin')
        self.session.add(membership)
        self.flush()
        return team

    def get_team(self, team_id):
        return Team.query.options(
            selectinload(Team.members).joinedload(TeamMember.user)
        ).filter_by(id=team_id).first()

    def list_teams_for_user(self, user_id):
        return Team.query.join(TeamMember, TeamMember.team_id == Team.id).filter(
            TeamMember.user_id == user_id
        ).options(
            selectinload(Team.members).joinedload(TeamMember.user)
        ).order_by(Team.created_at.asc(), Team.id.asc()).all()

    def delete_team(self, team):
        # cascade 會一併刪除 members 和 invitations
        self.session.delete(team)
        self.flush()

    def get_membership(self, user_id, team_id):
        return TeamMember.query.filter_by(user_id=user_id, team_id=team_id).first()

    def list_memberships(self, team_id):
        return TeamMember.query.filter_by(team_id=team_id).options(
            joinedload(TeamMember.user)
        ).order_by(TeamMember.created_at.asc(), TeamMember.id.asc()).all()

    def admin_team_ids(self, user_id):
        rows = self.session.query(TeamMember.team_id).filter_by(
            user_id=user_id, role='admin'
        ).order_by(TeamMember.created_at.asc(), TeamMember.id.asc()).all()
        return [row.team_id for row in rows]

    def all_team_ids(self):
        return [row.id for row in self.session.query(Team.id).order_by(Team.id.asc()).all()]

    def create_membership(self, user_id, team_id, role='member'):
        if self.get_membership(user_id, team_id):
            raise ConflictError('User is already a member of this team')

        membership = TeamMember(user_id=user_id, team_id=team_id, role=role)
        self.session.add(membership)
        self.flush()
        return membership

    # ============================================
    # Task
    # ============================================

    def _visible_tasks(self, user_id=None):
        query = Task.query
        if user_id is not None:
            query = query.filter(or_(Task.creator_id == user_id, Task.assignee_id == user_id))
        return query

    def create_task(self, **fields):
        task = Task(**fields)
        self.session.add(task)
        self.flush()
        return self.get_task(task.id)

    def get_task(self, task_id):
        return Task.query.options(
            joinedload(Task.creator),
            joinedload(Task.assignee)
        ).filter_by(id=task_id).first()

    def list_tasks(self, user_id=None, status=None, priority=None, assignee_id=None):
        """
        查詢任務列表 (最新建立的在前)

        user_id 有值時只回傳該使用者建立或被指派的任務
        """
        query = self._visible_tasks(user_id).options(
            joinedload(Task.creator),
            joinedload(Task.assignee)
        )

        if status:
            query = query.filter(Task.status == status)
        if priority:
            query = query.filter(Task.priority == priority)
        if assignee_id:
            query = query.filter(Task.assignee_id == assignee_id)

        return query.order_by(Task.created_at.desc(), Task.id.desc()).all()

    def update_task(self, task, **fields):
        for field, value in fields.items():
            setattr(task, field, value)
        self.flush()
        # assignee 可能換人,重新載入關聯
        self.session.refresh(task)
        return task

    def delete_task(self, task):
        self.session.delete(task)
        self.flush()

    def task_stats(self, requester_id, visible_to=None, now=None):
        """
        任務統計 (單一聚合查詢)

        visible_to 有值時只統計該使用者看得到的任務
        """
        now = now or utcnow()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow_start = today_start + timedelta(days=1)

        def count_if(condition):
            return func.sum(case((condition, 1), else_=0))

        columns = [
            func.count(Task.id).label('total'),
            count_if(Task.status == 'TODO').label('todo'),
            count_if(Task.status == 'IN_PROGRESS').label('in_progress'),
            count_if(Task.status == 'DONE').label('completed'),
            count_if(and_(Task.due_date >= today_start, Task.due_date < tomorrow_start)).label('due_today'),
            count_if(and_(Task.due_date < now, Task.status != 'DONE')).label('overdue'),
            count_if(Task.assignee_id == requester_id).label('assigned_to_me'),
            count_if(Task.creator_id == requester_id).label('created_by_me'),
        ]
        columns += [count_if(Task.priority == p).label(p.lower()) for p in TASK_PRIORITIES]

        query = self.session.query(*columns)
        if visible_to is not None:
            query = query.filter(or_(Task.creator_id == visible_to, Task.assignee_id == visible_to))
        row = query.one()

        total = row.total or 0
        completed = row.completed or 0

        return {
            'total': total,
            'todo': row.todo or 0,
            'in_progress': row.in_progress or 0,
            'completed': completed,
            'by_priority': {p: getattr(row, p.lower()) or 0 for p in TASK_PRIORITIES},
            'due_today': row.due_today or 0,
            'overdue': row.overdue or 0,
            'assigned_to_me': row.assigned_to_me or 0,
            'created_by_me': row.created_by_me or 0,
            'completion_rate': round(completed / total * 100) if total else 0
        }

    # ============================================
    # Invitation
    # ============================================

    def create_invitation(self, email, team_id, inviter_id, role, token, expires_at):
        invitation = Invitation(
            email=email.strip().lower(),
            team_id=team_id,
            inviter_id=inviter_id,
            role=role,
            token=token,
            expires_at=expires_at
        )
        self.session.add(invitation)
        self.flush()
        return invitation

    def get_invitation(self, invitation_id):
        return self.session.get(Invitation, invitation_id)

    def get_invitation_by_token(self, token):
        return Invitation.query.options(joinedload(Invitation.team)).filter_by(token=token).first()

    def get_team_invitation(self, team_id, email):
        return Invitation.query.filter_by(team_id=team_id, email=email.strip().lower()).first()

    def list_pending_invitations(self, team_ids, now=None):
        """尚未過期的邀請 (最新的在前)"""
        if not team_ids:
            return []
        return Invitation.query.filter(
            Invitation.team_id.in_(team_ids),
            Invitation.expires_at > (now or utcnow())
        ).order_by(Invitation.created_at.desc(), Invitation.id.desc()).all()

    def delete_invitation(self, invitation):
        self.session.delete(invitation)
        self.flush()
