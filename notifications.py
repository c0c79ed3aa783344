from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required, get_jwt_identity
from sqlalchemy import func
from models import db, Notification
from utils import get_pagination, paginated
from datetime import datetime, timedelta
from threading import Lock
import logging

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)

PUSH_EVENT = 'push-notifications'

# ============================================
# 1. Room hub
# ============================================

class NotificationHub:
    """
    In-process room registry

    Transports (websocket servers, SSE streams, tests) join rooms with a
    listener callable ``listener(event, payload)``; ``emit`` fans an event
    out to every listener in the given rooms.
    """

    def __init__(self):
        self._rooms = {}
        self._lock = Lock()

    def join(self, room, listener):
        with self._lock:
            self._rooms.setdefault(room, []).append(listener)

    def leave(self, room, listener):
        with self._lock:
            listeners = self._rooms.get(room, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._rooms.pop(room, None)

    def listeners(self, room):
        with self._lock:
            return list(self._rooms.get(room, []))

    def emit(self, rooms, event, payload):
        """Deliver to every listener; returns the number of deliveries"""
        delivered = 0
        for room in rooms:
            for listener in self.listeners(room):
                try:
                    listener(event, payload)
                    delivered += 1
                except Exception:
                    logger.error(f"Listener failed for room {room}", exc_info=True)
        return delivered


def user_room(user_id):
    return f'user:{user_id}'


def get_hub():
    hub = current_app.extensions.get('notification_hub')
    if hub is None:
        hub = NotificationHub()
        current_app.extensions['notification_hub'] = hub
    return hub

# ============================================
# 2. Publishing (internal)
# ============================================

def create_notifications(notification_type, content, recipient_ids, project_id=None, author_id=None):
    """
    Queue one Notification per recipient (caller commits)

    The author never notifies themselves.
    """
    notifications = []
    for user_id in sorted(set(recipient_ids or [])):
        if author_id is not None and user_id == author_id:
            continue
        notification = Notification(
            user_id=user_id,
            author_id=author_id,
            type=notification_type,
            content=content,
            related_project_id=project_id
        )
        db.session.add(notification)
        notifications.append(notification)
    return notifications


def publish(notifications):
    """Announce committed notifications to their recipients' rooms"""
    hub = get_hub()
    for user_id in sorted({n.user_id for n in notifications}):
        unread = Notification.query.filter_by(user_id=user_id, is_read=False).count()
        hub.emit([user_room(user_id)], PUSH_EVENT, {'unread_count': unread})


def push_notification(notification_type, content, recipient_ids, project_id=None, author_id=None):
    """Persist and publish in one step; for callers with nothing else to commit"""
    notifications = create_notifications(
        notification_type, content, recipient_ids, project_id, author_id
    )
    if not notifications:
        return []

    db.session.commit()
    publish(notifications)
    return notifications


def serialize_notification(n):
    return {
        'id': n.id,
        'type': n.type,
        'content': n.content,
        'is_read': n.is_read,
        'author': {
            'id': n.author.id,
            'username': n.author.username
        } if n.author else None,
        'project': {
            'id': n.project.id,
            'name': n.project.name
        } if n.project else None,
        'created_at': n.created_at.isoformat()
    }

# ============================================
# 3. Listing
# ============================================

@notifications_bp.route('/notifications', methods=['GET'])
@jwt_required()
def get_notifications():
    """Current user's notifications, newest first"""
    user_id = int(get_jwt_identity())

    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    notification_type = request.args.get('type')
    page, per_page = get_pagination()

    query = Notification.query.filter_by(user_id=user_id)

    if unread_only:
        query = query.filter_by(is_read=False)

    if notification_type:
        query = query.filter_by(type=notification_type)

    query = query.order_by(Notification.created_at.desc(), Notification.id.desc())
    notifications = query.paginate(page=page, per_page=per_page, error_out=False)

    body = paginated(notifications, 'notifications',
                     [serialize_notification(n) for n in notifications.items])
    body['unread_count'] = Notification.query.filter_by(user_id=user_id, is_read=False).count()
    return jsonify(body), 200

# ============================================
# 4. Read state
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>/read', methods=['PATCH'])
@jwt_required()
def mark_notification_read(notification_id):
    user_id = int(get_jwt_identity())

    notification = Notification.query.filter_by(
        id=notification_id,
        user_id=user_id
    ).first()

    if not notification:
        return jsonify({'error': 'Notification not found'}), 404

    notification.is_read = True

    try:
        db.session.commit()
        return jsonify({'message': 'Notification marked as read'}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error marking notification {notification_id} read: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update notification'}), 500


@notifications_bp.route('/notifications/read-all', methods=['PATCH'])
@jwt_required()
def mark_all_notifications_read():
    user_id = int(get_jwt_identity())

    try:
        updated = Notification.query.filter_by(user_id=user_id, is_read=False)\
            .update({'is_read': True})
        db.session.commit()

        return jsonify({'message': 'All notifications marked as read', 'updated': updated}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error marking notifications read: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update notifications'}), 500

# ============================================
# 5. Deleting
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>', methods=['DELETE'])
@jwt_required()
def delete_notification(notification_id):
    user_id = int(get_jwt_identity())

    notification = Notification.query.filter_by(
        id=notification_id,
        user_id=user_id
    ).first()

    if not notification:
        return jsonify({'error': 'Notification not found'}), 404

    try:
        db.session.delete(notification)
        db.session.commit()
        return jsonify({'message': 'Notification deleted'}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error deleting notification {notification_id}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to delete notification'}), 500


@notifications_bp.route('/notifications/clear', methods=['DELETE'])
@jwt_required()
def clear_notifications():
    """Remove every read notification"""
    user_id = int(get_jwt_identity())

    try:
        cleared = Notification.query.filter_by(user_id=user_id, is_read=True)\
            .delete(synchronize_session=False)
        db.session.commit()

        return jsonify({'message': f'Cleared {cleared} read notifications'}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error clearing notifications: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to clear notifications'}), 500


def purge_old_notifications(retention_days):
    """Delete every notification, read or not, older than retention_days; returns the count"""
    cutoff = datetime.utcnow() - timedelta(days=retention_days)
    purged = Notification.query.filter(
        Notification.created_at <= cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    logger.info(f"Purged {purged} notifications older than {retention_days} days")
    return purged

# ============================================
# 6. Stats
# ============================================

@notifications_bp.route('/notifications/stats', methods=['GET'])
@jwt_required()
def get_notification_stats():
    user_id = int(get_jwt_identity())

    total = Notification.query.filter_by(user_id=user_id).count()
    unread = Notification.query.filter_by(user_id=user_id, is_read=False).count()

    type_stats = db.session.query(
        Notification.type,
        func.count(Notification.id)
    ).filter(Notification.user_id == user_id).group_by(Notification.type).all()

    today_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    today_count = Notification.query.filter(
        Notification.user_id == user_id,
        Notification.created_at >= today_start
    ).count()

    return jsonify({
        'total': total,
        'unread': unread,
        'today': today_count,
        'by_type': {t: count for t, count in type_stats}
    }), 200
