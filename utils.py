from flask import current_app, request
from marshmallow import ValidationError

from models import db, ActivityLog


def validate_request_data(schema_class, data, partial=False):
    """
    Shared input validation

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data, partial=partial)
        return True, validated_data
    except ValidationError as err:
        return False, err.messages


def get_pagination(default_per_page=None):
    """
    Read page/per_page from the query string

    per_page is capped at MAX_PAGE_SIZE; non-positive values fall back to defaults.
    """
    if default_per_page is None:
        default_per_page = current_app.config.get('DEFAULT_PAGE_SIZE', 20)
    max_per_page = current_app.config.get('MAX_PAGE_SIZE', 100)

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', default_per_page, type=int)

    if page is None or page < 1:
        page = 1
    if per_page is None or per_page < 1:
        per_page = default_per_page

    return page, min(per_page, max_per_page)


def paginated(pagination, key, items):
    """Standard list envelope"""
    return {
        key: items,
        'total': pagination.total,
        'page': pagination.page,
        'per_page': pagination.per_page,
        'total_pages': pagination.pages
    }


def log_activity(project_id, user_id, action, resource_type, resource_id, details=None):
    """Queue an ActivityLog row on the current session (caller commits)"""
    activity = ActivityLog(
        project_id=project_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details
    )
    db.session.add(activity)
    return activity


def user_summary(user):
    if user is None:
        return None
    return {
        'id': user.id,
        'username': user.username,
        'email': user.email
    }
