from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from sqlalchemy import func, or_
from marshmallow import Schema, fields, validate, ValidationError
from models import db, Project, ProjectMember, Permission, Status, Task, User, LABEL_COLORS
from auth import get_current_user
from permissions import (
    InvalidPermissionDocument, SUPER_ADMIN, get_or_create_template,
    parse_permission_document, require_permission
)
from notifications import create_notifications, publish
from utils import validate_request_data, get_pagination, paginated, log_activity, user_summary
from datetime import datetime
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

# Seeded into every new project
DEFAULT_STATUSES = [
    ('Open', LABEL_COLORS[0]),
    ('In Progress', LABEL_COLORS[2]),
    ('Resolved', LABEL_COLORS[5]),
]

# ============================================
# Input Validation Schemas
# ============================================

def validate_document(value):
    try:
        parse_permission_document(value)
    except InvalidPermissionDocument as err:
        raise ValidationError(str(err))


class CreateProjectSchema(Schema):
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(validate=validate.Length(max=2000))


class UpdateProjectSchema(Schema):
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=2000))


class AddMemberSchema(Schema):
    user_id = fields.Int(required=True)
    permission_id = fields.Int(required=True)


class UpdateMemberSchema(Schema):
    permission_id = fields.Int(required=True)


class PermissionSchema(Schema):
    name = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    document = fields.Dict(required=True, validate=validate_document)

# ============================================
# Helpers
# ============================================

def serialize_project(project, user_id=None):
    return {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'status': project.status,
        'owner': {
            'id': project.owner.id,
            'username': project.owner.username
        },
        'is_admin': user_id is not None and project.owner_id == user_id,
        'created_at': project.created_at.isoformat(),
        'closed_at': project.closed_at.isoformat() if project.closed_at else None
    }


def serialize_member(member):
    return {
        'id': member.id,
        'user': user_summary(member.user),
        'permission': {
            'id': member.permission.id,
            'name': member.permission.name
        },
        'joined_at': member.joined_at.isoformat()
    }


def serialize_permission(permission):
    return {
        'id': permission.id,
        'name': permission.name,
        'document': permission.document,
        'is_global': permission.is_global,
        'created_at': permission.created_at.isoformat() if permission.created_at else None
    }


def get_assignable_permission(project_id, permission_id):
    """A permission usable in this project: a global template or one of its own"""
    permission = db.session.get(Permission, permission_id)
    if permission is None:
        return None
    if permission.project_id is not None and permission.project_id != project_id:
        return None
    return permission


def load_project(project_id):
    return Project.query.options(joinedload(Project.owner)).filter_by(id=project_id).first()

# ============================================
# Create project
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
def create_project():
    """
    Create a project

    The creator becomes its administrator and is added as a member with
    the Super Admin template; default task statuses are seeded.
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateProjectSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    project = Project(
        name=result['name'],
        description=result.get('description'),
        owner_id=current_user.id
    )

    try:
        db.session.add(project)
        db.session.flush()

        for name, color in DEFAULT_STATUSES:
            db.session.add(Status(name=name, color=color, project_id=project.id))

        admin_template = get_or_create_template(SUPER_ADMIN)
        db.session.add(ProjectMember(
            project_id=project.id,
            user_id=current_user.id,
            permission_id=admin_template.id
        ))

        log_activity(project.id, current_user.id, 'create_project', 'project', project.id,
                     {'name': project.name})

        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Project creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project creation failed due to server error'}), 500

    logger.info(f"Project created: {project.name} by user {current_user.email}")

    return jsonify({
        'message': 'Project created successfully',
        'project': serialize_project(project, current_user.id)
    }), 201

# ============================================
# List my projects
# ============================================

@projects_bp.route('', methods=['GET'])
@jwt_required()
def get_my_projects():
    """Projects I own or belong to; active first, newest first"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    page, per_page = get_pagination()
    name = request.args.get('name')

    member_project_ids = db.session.query(ProjectMember.project_id).filter(
        ProjectMember.user_id == current_user.id
    )

    query = Project.query.options(joinedload(Project.owner)).filter(
        or_(
            Project.owner_id == current_user.id,
            Project.id.in_(member_project_ids)
        )
    )

    if name:
        query = query.filter(Project.name.ilike(f'%{name}%'))

    query = query.order_by(Project.status.asc(), Project.created_at.desc(), Project.id.desc())

    try:
        projects = query.paginate(page=page, per_page=per_page, error_out=False)

        # Open task counts in one query
        ids = [p.id for p in projects.items]
        open_counts = dict(
            db.session.query(Task.project_id, func.count(Task.id))
            .filter(Task.project_id.in_(ids), Task.closed_at.is_(None))
            .group_by(Task.project_id)
            .all()
        ) if ids else {}

        items = []
        for project in projects.items:
            entry = serialize_project(project, current_user.id)
            entry['open_task_count'] = open_counts.get(project.id, 0)
            items.append(entry)

        return jsonify(paginated(projects, 'projects', items)), 200

    except Exception as e:
        logger.error(f"Error fetching projects: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to fetch projects'}), 500

# ============================================
# Single project
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@jwt_required()
@require_permission('project.id')
def get_project(project_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = load_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    body = serialize_project(project, current_user.id)
    body['statuses'] = [
        {'id': s.id, 'name': s.name, 'color': s.color}
        for s in Status.query.filter_by(project_id=project_id).order_by(Status.id).all()
    ]
    body['member_count'] = ProjectMember.query.filter_by(project_id=project_id).count()
    return jsonify(body), 200


@projects_bp.route('/<int:project_id>', methods=['PATCH'])
@jwt_required()
@require_permission('project.id')
def update_project(project_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateProjectSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    changes = {}
    for field in ['name', 'description']:
        if field in result:
            old_value = getattr(project, field)
            new_value = result[field]
            if old_value != new_value:
                changes[field] = {'old': old_value, 'new': new_value}
                setattr(project, field, new_value)

    if not changes:
        return jsonify({'message': 'No changes to update'}), 200

    try:
        log_activity(project_id, current_user.id, 'update_project', 'project', project_id,
                     {'changes': changes})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Project update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project update failed due to server error'}), 500

    logger.info(f"Project {project_id} updated by user {current_user.email}")

    return jsonify({
        'message': 'Project updated successfully',
        'project': serialize_project(project, current_user.id),
        'changes': changes
    }), 200


@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@jwt_required()
@require_permission('project.id')
def close_project(project_id):
    """
    Close a project

    Refused while any task is still open. Closed projects stay readable.
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    if project.status == 'closed':
        return jsonify({'error': 'Project is already closed'}), 409

    open_tasks = Task.query.filter_by(project_id=project_id, closed_at=None).count()
    if open_tasks:
        return jsonify({
            'error': 'Cannot close the project with open tasks',
            'open_tasks': open_tasks
        }), 400

    try:
        project.status = 'closed'
        project.closed_at = datetime.utcnow()
        log_activity(project_id, current_user.id, 'close_project', 'project', project_id)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Project close error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project close failed due to server error'}), 500

    logger.info(f"Project closed: {project.name} by user {current_user.email}")
    return jsonify({'message': 'Project closed successfully'}), 200

# ============================================
# Members
# ============================================

@projects_bp.route('/<int:project_id>/members', methods=['GET'])
@jwt_required()
@require_permission('project.member.all')
def get_project_members(project_id):
    page, per_page = get_pagination()

    try:
        members = ProjectMember.query.filter_by(project_id=project_id).options(
            joinedload(ProjectMember.user),
            joinedload(ProjectMember.permission)
        ).order_by(ProjectMember.joined_at.asc(), ProjectMember.id.asc()).paginate(
            page=page, per_page=per_page, error_out=False
        )

        return jsonify(paginated(members, 'members',
                                 [serialize_member(m) for m in members.items])), 200

    except Exception as e:
        logger.error(f"Error fetching members: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to fetch members'}), 500


@projects_bp.route('/<int:project_id>/members', methods=['POST'])
@jwt_required()
@require_permission('project.member.id')
def add_project_member(project_id):
    """Add a user to the project with a permission template; the user is notified"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AddMemberSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user = db.session.get(User, result['user_id'])
    if not user or not user.is_active:
        return jsonify({'error': 'User not found'}), 404

    permission = get_assignable_permission(project_id, result['permission_id'])
    if not permission:
        return jsonify({'error': 'Permission not found'}), 404

    existing = ProjectMember.query.filter_by(
        project_id=project_id,
        user_id=user.id
    ).first()
    if existing:
        return jsonify({'error': 'User is already a member'}), 409

    try:
        member = ProjectMember(
            project_id=project_id,
            user_id=user.id,
            permission_id=permission.id
        )
        db.session.add(member)
        db.session.flush()

        notifications = create_notifications(
            'member_added',
            f'{current_user.username} added you to the project {project.name}',
            [user.id],
            project_id=project_id,
            author_id=current_user.id
        )

        log_activity(project_id, current_user.id, 'add_member', 'member', member.id,
                     {'username': user.username, 'permission': permission.name})

        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error adding member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add member due to server error'}), 500

    publish(notifications)
    logger.info(f"Member added to project {project_id}: user {user.email}")

    return jsonify({
        'message': 'Member added successfully',
        'member': serialize_member(member)
    }), 201


@projects_bp.route('/<int:project_id>/members/<int:member_id>', methods=['PATCH'])
@jwt_required()
@require_permission('project.member.id')
def update_project_member(project_id, member_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    member = ProjectMember.query.filter_by(id=member_id, project_id=project_id).first()
    if not member:
        return jsonify({'error': 'Member not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateMemberSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    permission = get_assignable_permission(project_id, result['permission_id'])
    if not permission:
        return jsonify({'error': 'Permission not found'}), 404

    old_permission = member.permission.name
    member.permission_id = permission.id

    try:
        log_activity(project_id, current_user.id, 'update_member', 'member', member.id,
                     {'old': old_permission, 'new': permission.name})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error updating member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update member due to server error'}), 500

    db.session.refresh(member)
    return jsonify({
        'message': 'Member updated successfully',
        'member': serialize_member(member)
    }), 200


@projects_bp.route('/<int:project_id>/members/<int:member_id>', methods=['DELETE'])
@jwt_required()
@require_permission('project.member.id')
def remove_project_member(project_id, member_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    member = ProjectMember.query.filter_by(id=member_id, project_id=project_id).first()
    if not member:
        return jsonify({'error': 'Member not found'}), 404

    if member.user_id == member.project.owner_id:
        return jsonify({'error': 'The project owner cannot be removed'}), 400

    try:
        log_activity(project_id, current_user.id, 'remove_member', 'member', member.id,
                     {'user_id': member.user_id})
        db.session.delete(member)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error removing member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to remove member due to server error'}), 500

    return jsonify({'message': 'Member removed successfully'}), 200

# ============================================
# Permission templates
# ============================================

@projects_bp.route('/<int:project_id>/permissions', methods=['GET'])
@jwt_required()
@require_permission('project.permission.all')
def get_project_permissions(project_id):
    permissions = Permission.query.filter(
        or_(Permission.project_id.is_(None), Permission.project_id == project_id)
    ).order_by(Permission.project_id.isnot(None), Permission.id).all()

    return jsonify({
        'permissions': [serialize_permission(p) for p in permissions],
        'total': len(permissions)
    }), 200


@projects_bp.route('/<int:project_id>/permissions', methods=['POST'])
@jwt_required()
@require_permission('project.permission.id')
def create_project_permission(project_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(PermissionSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if Permission.query.filter_by(project_id=project_id, name=result['name']).first():
        return jsonify({'error': 'Permission name already exists'}), 409

    permission = Permission(
        name=result['name'],
        document=result['document'],
        project_id=project_id
    )

    try:
        db.session.add(permission)
        db.session.flush()
        log_activity(project_id, current_user.id, 'create_permission', 'permission',
                     permission.id, {'name': permission.name})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating permission: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to create permission due to server error'}), 500

    return jsonify({
        'message': 'Permission created successfully',
        'permission': serialize_permission(permission)
    }), 201


@projects_bp.route('/<int:project_id>/permissions/<int:permission_id>', methods=['PATCH'])
@jwt_required()
@require_permission('project.permission.id')
def update_project_permission(project_id, permission_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    permission = get_assignable_permission(project_id, permission_id)
    if not permission:
        return jsonify({'error': 'Permission not found'}), 404

    if permission.is_global:
        return jsonify({'error': 'Global permission templates are read-only'}), 403

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(PermissionSchema, data, partial=True)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if 'name' in result and result['name'] != permission.name:
        clash = Permission.query.filter_by(project_id=project_id, name=result['name']).first()
        if clash:
            return jsonify({'error': 'Permission name already exists'}), 409
        permission.name = result['name']

    if 'document' in result:
        permission.document = result['document']

    try:
        log_activity(project_id, current_user.id, 'update_permission', 'permission',
                     permission.id, {'name': permission.name})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error updating permission: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update permission due to server error'}), 500

    return jsonify({
        'message': 'Permission updated successfully',
        'permission': serialize_permission(permission)
    }), 200

# ============================================
# Stats
# ============================================

@projects_bp.route('/<int:project_id>/stats', methods=['GET'])
@jwt_required()
@require_permission('project.id')
def get_project_stats(project_id):
    try:
        total = Task.query.filter_by(project_id=project_id).count()
        open_count = Task.query.filter_by(project_id=project_id, closed_at=None).count()

        by_status = db.session.query(
            Status.name,
            func.count(Task.id)
        ).join(Task, Task.status_id == Status.id).filter(
            Task.project_id == project_id,
            Task.closed_at.is_(None)
        ).group_by(Status.name).all()

        member_count = ProjectMember.query.filter_by(project_id=project_id).count()

        closed_count = total - open_count
        return jsonify({
            'tasks': {
                'total': total,
                'open': open_count,
                'closed': closed_count,
                'open_by_status': {name: count for name, count in by_status}
            },
            'members': member_count,
            'completion_rate': round(closed_count / (total or 1) * 100, 2)
        }), 200

    except Exception as e:
        logger.error(f"Error fetching stats: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to fetch project statistics'}), 500
