from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate
from models import db, Task, Project, ProjectMember, Status, Tracker
from auth import get_current_user
from permissions import require_permission
from notifications import create_notifications, publish
from utils import validate_request_data, get_pagination, paginated, log_activity, user_summary
from datetime import datetime
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(Schema):
    description = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=5000),
        error_messages={'required': 'Task description is required'}
    )
    tracker_id = fields.Int(required=True)
    status_id = fields.Int(allow_none=True)
    assignees = fields.List(fields.Int(), load_default=list)


class UpdateTaskSchema(Schema):
    description = fields.Str(validate=validate.Length(min=1, max=5000))
    tracker_id = fields.Int()
    status_id = fields.Int()
    assignees = fields.List(fields.Int())

# ============================================
# Helpers
# ============================================

def serialize_task(task):
    return {
        'id': task.id,
        'project_id': task.project_id,
        'description': task.description,
        'tracker': {'id': task.tracker.id, 'name': task.tracker.name} if task.tracker else None,
        'status': {
            'id': task.status.id,
            'name': task.status.name,
            'color': task.status.color
        } if task.status else None,
        'assignees': list(task.assignees or []),
        'created_by': user_summary(task.creator),
        'updated_by': user_summary(task.updater),
        'closed_by': user_summary(task.closer),
        'created_at': task.created_at.isoformat(),
        'updated_at': task.updated_at.isoformat() if task.updated_at else None,
        'closed_at': task.closed_at.isoformat() if task.closed_at else None
    }


def non_member_ids(project_id, user_ids):
    """Ids in user_ids that are not members of the project"""
    if not user_ids:
        return []
    members = {
        row.user_id for row in ProjectMember.query.filter(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id.in_(user_ids)
        ).all()
    }
    return sorted(set(user_ids) - members)


def check_references(project_id, result):
    """Validate tracker/status/assignees; returns an error response or None"""
    if 'tracker_id' in result and not db.session.get(Tracker, result['tracker_id']):
        return jsonify({'error': 'Tracker not found'}), 400

    if result.get('status_id') is not None:
        status = Status.query.filter_by(id=result['status_id'], project_id=project_id).first()
        if not status:
            return jsonify({'error': 'Status does not belong to this project'}), 400

    outsiders = non_member_ids(project_id, result.get('assignees'))
    if outsiders:
        return jsonify({
            'error': 'Assigned users are not members of this project',
            'user_ids': outsiders
        }), 400

    return None


def task_query(project_id):
    return Task.query.filter_by(project_id=project_id).options(
        joinedload(Task.tracker),
        joinedload(Task.status),
        joinedload(Task.creator),
        joinedload(Task.updater),
        joinedload(Task.closer)
    )

# ============================================
# Create task
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['POST'])
@jwt_required()
@require_permission('project.task.id')
def create_task(project_id):
    """Create a task; assignees are notified"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    if project.status == 'closed':
        return jsonify({'error': 'Cannot add tasks to a closed project'}), 400

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateTaskSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    error = check_references(project_id, result)
    if error:
        return error

    status_id = result.get('status_id')
    if status_id is None:
        default_status = Status.query.filter_by(project_id=project_id).order_by(Status.id).first()
        if not default_status:
            return jsonify({'error': 'Project has no statuses'}), 400
        status_id = default_status.id

    assignees = sorted(set(result['assignees']))
    task = Task(
        description=result['description'],
        tracker_id=result['tracker_id'],
        status_id=status_id,
        project_id=project_id,
        assignees=assignees,
        created_by=current_user.id
    )

    try:
        db.session.add(task)
        db.session.flush()

        notifications = create_notifications(
            'task_assigned',
            f'{current_user.username} assigned you a task in {project.name}',
            assignees,
            project_id=project_id,
            author_id=current_user.id
        )

        log_activity(project_id, current_user.id, 'create_task', 'task', task.id)

        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Task creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task creation failed due to server error'}), 500

    publish(notifications)
    logger.info(f"Task {task.id} created in project {project_id} by {current_user.email}")

    return jsonify({
        'message': 'Task created successfully',
        'task': serialize_task(task)
    }), 201

# ============================================
# List project tasks
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['GET'])
@jwt_required()
@require_permission('project.task.all')
def get_project_tasks(project_id):
    """
    Project tasks, open ones first then newest first

    Filters: tracker_id, status_id, search (description substring),
    include_closed (default true).
    """
    query = task_query(project_id)

    tracker_id = request.args.get('tracker_id', type=int)
    if tracker_id:
        query = query.filter(Task.tracker_id == tracker_id)

    status_id = request.args.get('status_id', type=int)
    if status_id:
        query = query.filter(Task.status_id == status_id)

    search = request.args.get('search')
    if search:
        query = query.filter(Task.description.ilike(f'%{search}%'))

    if request.args.get('include_closed', 'true').lower() == 'false':
        query = query.filter(Task.closed_at.is_(None))

    # NULL closed_at (open) sorts first
    query = query.order_by(Task.closed_at.isnot(None), Task.closed_at.asc(), Task.id.desc())

    page, per_page = get_pagination()

    try:
        tasks = query.paginate(page=page, per_page=per_page, error_out=False)
        return jsonify(paginated(tasks, 'tasks', [serialize_task(t) for t in tasks.items])), 200
    except Exception as e:
        logger.error(f"Error fetching tasks: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to fetch tasks'}), 500

# ============================================
# Single task
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks/<int:task_id>', methods=['GET'])
@jwt_required()
@require_permission('project.task.id')
def get_task(project_id, task_id):
    task = task_query(project_id).filter(Task.id == task_id).first()
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    return jsonify(serialize_task(task)), 200


@tasks_bp.route('/projects/<int:project_id>/tasks/<int:task_id>', methods=['PATCH'])
@jwt_required()
@require_permission('project.task.id')
def update_task(project_id, task_id):
    """Update a task; users newly added to assignees are notified"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    task = Task.query.filter_by(id=task_id, project_id=project_id).first()
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    if not task.is_open:
        return jsonify({'error': 'Closed tasks cannot be modified'}), 400

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateTaskSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    error = check_references(project_id, result)
    if error:
        return error

    changes = {}
    for field in ['description', 'tracker_id', 'status_id']:
        if field in result and getattr(task, field) != result[field]:
            changes[field] = {'old': getattr(task, field), 'new': result[field]}
            setattr(task, field, result[field])

    added = []
    if 'assignees' in result:
        old_assignees = set(task.assignees or [])
        new_assignees = set(result['assignees'])
        if old_assignees != new_assignees:
            changes['assignees'] = {'old': sorted(old_assignees), 'new': sorted(new_assignees)}
            task.assignees = sorted(new_assignees)
            added = sorted(new_assignees - old_assignees)

    if not changes:
        return jsonify({'message': 'No changes to update'}), 200

    task.updated_by = current_user.id

    try:
        notifications = create_notifications(
            'task_assigned',
            f'{current_user.username} assigned you a task in {task.project.name}',
            added,
            project_id=project_id,
            author_id=current_user.id
        )
        log_activity(project_id, current_user.id, 'update_task', 'task', task.id,
                     {'changes': changes})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Task update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task update failed due to server error'}), 500

    publish(notifications)

    return jsonify({
        'message': 'Task updated successfully',
        'task': serialize_task(task),
        'changes': changes
    }), 200


@tasks_bp.route('/projects/<int:project_id>/tasks/<int:task_id>', methods=['DELETE'])
@jwt_required()
@require_permission('project.task.id')
def close_task(project_id, task_id):
    """Close (soft delete) a task; creator and assignees are notified"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    task = Task.query.filter_by(id=task_id, project_id=project_id).first()
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    if not task.is_open:
        return jsonify({'error': 'Task is already closed'}), 409

    task.closed_at = datetime.utcnow()
    task.closed_by = current_user.id
    task.updated_by = current_user.id

    try:
        notifications = create_notifications(
            'task_closed',
            f'{current_user.username} closed a task in {task.project.name}',
            [task.created_by, *(task.assignees or [])],
            project_id=project_id,
            author_id=current_user.id
        )
        log_activity(project_id, current_user.id, 'close_task', 'task', task.id)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Task close error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task close failed due to server error'}), 500

    publish(notifications)
    logger.info(f"Task {task_id} closed by {current_user.email}")

    return jsonify({'message': 'Task closed successfully'}), 200

# ============================================
# My tasks
# ============================================

@tasks_bp.route('/tasks/my', methods=['GET'])
@jwt_required()
def get_my_tasks():
    """
    Open tasks assigned to me across my projects

    assignees is a JSON list, so the membership test runs in Python.
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project_ids = db.session.query(ProjectMember.project_id).filter(
        ProjectMember.user_id == current_user.id
    )

    tasks = Task.query.filter(
        Task.project_id.in_(project_ids),
        Task.closed_at.is_(None)
    ).options(
        joinedload(Task.tracker),
        joinedload(Task.status),
        joinedload(Task.creator)
    ).order_by(Task.id.desc()).all()

    mine = [t for t in tasks if current_user.id in (t.assignees or [])]

    return jsonify({
        'tasks': [serialize_task(t) for t in mine],
        'total': len(mine)
    }), 200
