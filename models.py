from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()

# Palette shared by labels and statuses (RGB triplets)
LABEL_COLORS = [
    '51, 171, 5',    # green
    '255, 132, 0',   # yellow
    '2, 122, 207',   # blue
    '207, 67, 2',    # orange
    '202, 13, 13',   # red
    '124, 36, 255',  # violet
    '229, 36, 255',  # pink
]

# ============================================
# 1. User
# ============================================
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(225), nullable=False)
    username = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    owned_projects = db.relationship('Project', backref='owner', lazy=True)
    memberships = db.relationship('ProjectMember', backref='user', lazy=True,
                                  cascade='all,delete-orphan')
    notifications = db.relationship('Notification', foreign_keys='Notification.user_id',
                                    backref='recipient', lazy=True, cascade='all,delete-orphan')

# ============================================
# 2. Permission (named permission document)
# ============================================
class Permission(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    # Nested {scope: {...: {VERB: bool}}} tree, see permissions.parse_permission_document
    document = db.Column(db.JSON, nullable=False)
    # NULL means a global template shared by every project
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    members = db.relationship('ProjectMember', backref='permission', lazy=True)

    __table_args__ = (
        db.UniqueConstraint('project_id', 'name', name='unique_project_permission'),
    )

    @property
    def is_global(self):
        return self.project_id is None

# ============================================
# 3. Project
# ============================================
class Project(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    # The owner is the project administrator
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), default='active')  # active, closed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)

    tasks = db.relationship('Task', backref='project', lazy=True, cascade='all,delete-orphan')
    members = db.relationship('ProjectMember', backref='project', lazy=True, cascade='all,delete-orphan')
    labels = db.relationship('Label', backref='project', lazy=True, cascade='all,delete-orphan')
    statuses = db.relationship('Status', backref='project', lazy=True, cascade='all,delete-orphan')
    permissions = db.relationship('Permission', backref='project', lazy=True, cascade='all,delete-orphan')
    activity_logs = db.relationship('ActivityLog', backref='project', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_project_status', 'status'),
        db.Index('idx_project_owner', 'owner_id'),
    )

# ============================================
# 4. ProjectMember
# ============================================
class ProjectMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    permission_id = db.Column(db.Integer, db.ForeignKey('permission.id'), nullable=False)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

# ============================================
# 5. Tracker (Bug, Error, ...)
# ============================================
class Tracker(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)

# ============================================
# 6. Status (per project)
# ============================================
class Status(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    color = db.Column(db.String(20), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('project_id', 'name', name='unique_project_status'),
    )

# ============================================
# 7. Label (per project)
# ============================================
class Label(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    color = db.Column(db.String(20), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('project_id', 'name', name='unique_project_label'),
    )

# ============================================
# 8. Task
# ============================================
class Task(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.Text, nullable=False)

    tracker_id = db.Column(db.Integer, db.ForeignKey('tracker.id'), nullable=False)
    status_id = db.Column(db.Integer, db.ForeignKey('status.id'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    assignees = db.Column(db.JSON, default=list)  # list of user ids

    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    updated_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    closed_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)
    # Closing a task is a soft delete
    closed_at = db.Column(db.DateTime, nullable=True)

    tracker = db.relationship('Tracker')
    status = db.relationship('Status')
    creator = db.relationship('User', foreign_keys=[created_by])
    updater = db.relationship('User', foreign_keys=[updated_by])
    closer = db.relationship('User', foreign_keys=[closed_by])

    __table_args__ = (
        db.Index('idx_task_project_status', 'project_id', 'status_id'),
        db.Index('idx_task_closed_at', 'closed_at'),
    )

    @property
    def is_open(self):
        return self.closed_at is None

# ============================================
# 9. Notification
# ============================================
class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    author_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    type = db.Column(db.String(50), nullable=False, default='general')
    content = db.Column(db.Text)
    is_read = db.Column(db.Boolean, default=False)
    related_project_id = db.Column(db.Integer, db.ForeignKey('project.id', ondelete='SET NULL'),
                                   nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    author = db.relationship('User', foreign_keys=[author_id])
    project = db.relationship('Project')

# ============================================
# 10. ActivityLog
# ============================================
class ActivityLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    action = db.Column(db.String(100), nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.Integer)
    details = db.Column(db.JSON)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)

# ============================================
# 11. TokenBlocklist (revoked JWTs)
# ============================================
class TokenBlocklist(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(36), nullable=False, unique=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
