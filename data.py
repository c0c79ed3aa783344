from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, Label, Status, Task, Tracker, LABEL_COLORS
from auth import get_current_user
from permissions import require_permission
from utils import validate_request_data, log_activity
import logging

data_bp = Blueprint('data', __name__)
logger = logging.getLogger(__name__)

DEFAULT_TRACKERS = ['Bug', 'Error', 'Feature']

# ============================================
# Input Validation Schemas
# ============================================

class ColoredItemSchema(Schema):
    """Shared by labels and statuses"""
    name = fields.Str(required=True, validate=validate.Length(min=1, max=50))
    color = fields.Str(required=True, validate=validate.OneOf(LABEL_COLORS))


def serialize_item(item):
    return {'id': item.id, 'name': item.name, 'color': item.color}


def seed_trackers():
    """Insert missing default trackers (caller commits)"""
    existing = {t.name for t in Tracker.query.all()}
    for name in DEFAULT_TRACKERS:
        if name not in existing:
            db.session.add(Tracker(name=name))

# ============================================
# Trackers
# ============================================

@data_bp.route('/trackers', methods=['GET'])
@jwt_required()
def get_trackers():
    trackers = Tracker.query.order_by(Tracker.id).all()
    return jsonify({
        'trackers': [{'id': t.id, 'name': t.name} for t in trackers]
    }), 200

# ============================================
# Project-scoped colored items (labels, statuses)
# ============================================

def list_items(model, project_id, key):
    items = model.query.filter_by(project_id=project_id).order_by(model.id).all()
    return jsonify({key: [serialize_item(i) for i in items], 'total': len(items)}), 200


def create_item(model, project_id, resource_type):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(ColoredItemSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if model.query.filter_by(project_id=project_id, name=result['name']).first():
        return jsonify({'error': f'{resource_type.capitalize()} must be unique for a project'}), 409

    item = model(name=result['name'], color=result['color'], project_id=project_id)

    try:
        db.session.add(item)
        db.session.flush()
        log_activity(project_id, current_user.id, f'create_{resource_type}', resource_type,
                     item.id, {'name': item.name})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating {resource_type}: {str(e)}", exc_info=True)
        return jsonify({'error': f'Failed to create {resource_type} due to server error'}), 500

    return jsonify({resource_type: serialize_item(item)}), 201


def update_item(model, project_id, item_id, resource_type):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    item = model.query.filter_by(id=item_id, project_id=project_id).first()
    if not item:
        return jsonify({'error': f'{resource_type.capitalize()} not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(ColoredItemSchema, data, partial=True)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if 'name' in result and result['name'] != item.name:
        if model.query.filter_by(project_id=project_id, name=result['name']).first():
            return jsonify({'error': f'{resource_type.capitalize()} must be unique for a project'}), 409
        item.name = result['name']

    if 'color' in result:
        item.color = result['color']

    try:
        log_activity(project_id, current_user.id, f'update_{resource_type}', resource_type,
                     item.id, {'name': item.name})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error updating {resource_type}: {str(e)}", exc_info=True)
        return jsonify({'error': f'Failed to update {resource_type} due to server error'}), 500

    return jsonify({resource_type: serialize_item(item)}), 200


def delete_item(model, project_id, item_id, resource_type):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    item = model.query.filter_by(id=item_id, project_id=project_id).first()
    if not item:
        return jsonify({'error': f'{resource_type.capitalize()} not found'}), 404

    if model is Status and Task.query.filter_by(status_id=item.id).first():
        return jsonify({'error': 'Status is still used by tasks'}), 409

    try:
        log_activity(project_id, current_user.id, f'delete_{resource_type}', resource_type,
                     item.id, {'name': item.name})
        db.session.delete(item)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error deleting {resource_type}: {str(e)}", exc_info=True)
        return jsonify({'error': f'Failed to delete {resource_type} due to server error'}), 500

    return jsonify({'message': f'{resource_type.capitalize()} deleted successfully'}), 200

# ============================================
# Labels
# ============================================

@data_bp.route('/projects/<int:project_id>/labels', methods=['GET'])
@jwt_required()
@require_permission('project.label.all')
def get_labels(project_id):
    return list_items(Label, project_id, 'labels')


@data_bp.route('/projects/<int:project_id>/labels', methods=['POST'])
@jwt_required()
@require_permission('project.label.id')
def create_label(project_id):
    return create_item(Label, project_id, 'label')


@data_bp.route('/projects/<int:project_id>/labels/<int:label_id>', methods=['PATCH'])
@jwt_required()
@require_permission('project.label.id')
def update_label(project_id, label_id):
    return update_item(Label, project_id, label_id, 'label')


@data_bp.route('/projects/<int:project_id>/labels/<int:label_id>', methods=['DELETE'])
@jwt_required()
@require_permission('project.label.id')
def delete_label(project_id, label_id):
    return delete_item(Label, project_id, label_id, 'label')

# ============================================
# Statuses
# ============================================

@data_bp.route('/projects/<int:project_id>/statuses', methods=['GET'])
@jwt_required()
@require_permission('project.status.all')
def get_statuses(project_id):
    return list_items(Status, project_id, 'statuses')


@data_bp.route('/projects/<int:project_id>/statuses', methods=['POST'])
@jwt_required()
@require_permission('project.status.id')
def create_status(project_id):
    return create_item(Status, project_id, 'status')


@data_bp.route('/projects/<int:project_id>/statuses/<int:status_id>', methods=['PATCH'])
@jwt_required()
@require_permission('project.status.id')
def update_status(project_id, status_id):
    return update_item(Status, project_id, status_id, 'status')


@data_bp.route('/projects/<int:project_id>/statuses/<int:status_id>', methods=['DELETE'])
@jwt_required()
@require_permission('project.status.id')
def delete_status(project_id, status_id):
    return delete_item(Status, project_id, status_id, 'status')
