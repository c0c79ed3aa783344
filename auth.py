from flask import Blueprint, request, jsonify
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity, get_jwt
from marshmallow import Schema, fields, validate
from models import db, User, Project, ProjectMember, TokenBlocklist
from extensions import bcrypt, limiter
from utils import validate_request_data, user_summary
from datetime import datetime
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class RegisterSchema(Schema):
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128, error='Password must be 8-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    username = fields.Str(
        required=True,
        validate=validate.Length(min=2, max=50, error='Username must be 2-50 characters'),
        error_messages={'required': 'Username is required'}
    )


class LoginSchema(Schema):
    email = fields.Email(required=True)
    password = fields.Str(required=True)


class UpdateProfileSchema(Schema):
    username = fields.Str(validate=validate.Length(min=2, max=50))


class ChangePasswordSchema(Schema):
    current_password = fields.Str(required=True)
    new_password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128)
    )

# ============================================
# Helpers (used by the other blueprints)
# ============================================

def get_current_user():
    """
    Load the User behind the current JWT

    Returns None for unknown or deactivated accounts.
    """
    try:
        user_id = get_jwt_identity()
        if not user_id:
            return None
        user = db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        logger.warning(f"Malformed token identity: {get_jwt_identity()!r}")
        return None

    if user is None or not user.is_active:
        return None
    return user


def revoke_current_token():
    db.session.add(TokenBlocklist(jti=get_jwt()['jti']))


def is_token_revoked(jwt_payload):
    """
    flask-jwt-extended blocklist hook

    Tokens of deactivated accounts count as revoked too.
    """
    jti = jwt_payload.get('jti')
    if TokenBlocklist.query.filter_by(jti=jti).first() is not None:
        return True

    try:
        user = db.session.get(User, int(jwt_payload.get('sub')))
    except (TypeError, ValueError):
        return True
    return user is None or not user.is_active


def prune_token_blocklist(max_age):
    """Drop blocklist rows older than max_age (a timedelta); returns the count"""
    cutoff = datetime.utcnow() - max_age
    pruned = TokenBlocklist.query.filter(TokenBlocklist.created_at < cutoff)\
        .delete(synchronize_session=False)
    db.session.commit()
    logger.info(f"Pruned {pruned} revoked tokens older than {max_age}")
    return pruned


def issue_tokens(user):
    return {
        'access_token': create_access_token(identity=str(user.id)),
        'refresh_token': create_refresh_token(identity=str(user.id)),
    }

# ============================================
# Register / login
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit('5 per hour')
def register():
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(RegisterSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if User.query.filter_by(email=result['email']).first():
        return jsonify({'error': 'Email already exists'}), 409

    user = User(
        email=result['email'],
        username=result['username'],
        password_hash=bcrypt.generate_password_hash(result['password']).decode('utf-8')
    )

    try:
        db.session.add(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        # Exception details stay in the log
        logger.error(f"Registration error for {result['email']}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Registration failed due to server error'}), 500

    logger.info(f"New user registered: {user.email}")

    return jsonify({
        'message': 'User registered successfully',
        'user': user_summary(user),
        **issue_tokens(user)
    }), 201


@auth_bp.route('/login', methods=['POST'])
@limiter.limit('10 per minute')
def login():
    """
    Exchange credentials for an access/refresh token pair

    Wrong email and wrong password answer identically.
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(LoginSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user = User.query.filter_by(email=result['email']).first()

    if not user or not bcrypt.check_password_hash(user.password_hash, result['password']):
        logger.warning(f"Failed login attempt for email: {result['email']}")
        return jsonify({'error': 'Invalid credentials'}), 401

    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        return jsonify({'error': 'Account is disabled'}), 403

    try:
        user.last_login = datetime.utcnow()
        db.session.commit()
    except Exception as e:
        # Login still succeeds
        db.session.rollback()
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")

    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'message': 'Login successful',
        'user': user_summary(user),
        **issue_tokens(user)
    }), 200

# ============================================
# Tokens
# ============================================

@auth_bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'Invalid or inactive user'}), 401

    return jsonify({
        'access_token': create_access_token(identity=str(user.id))
    }), 200


@auth_bp.route('/logout', methods=['POST'])
@jwt_required(verify_type=False)
def logout():
    """Revoke the presented token (access or refresh)"""
    try:
        revoke_current_token()
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Logout failed for {get_jwt_identity()}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Logout failed due to server error'}), 500

    logger.info(f"User logged out: {get_jwt_identity()}")
    return jsonify({'message': 'Logout successful'}), 200

# ============================================
# Profile
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    """Profile plus owned / contributed project counts"""
    user = get_current_user()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    total_projects = Project.query.filter_by(owner_id=user.id).count()
    total_contributed = ProjectMember.query.join(
        Project, Project.id == ProjectMember.project_id
    ).filter(
        ProjectMember.user_id == user.id,
        Project.owner_id != user.id
    ).count()

    return jsonify({
        'id': user.id,
        'email': user.email,
        'username': user.username,
        'is_active': user.is_active,
        'last_login': user.last_login.isoformat() if user.last_login else None,
        'created_at': user.created_at.isoformat(),
        'total_projects': total_projects,
        'total_contributed_projects': total_contributed
    }), 200


@auth_bp.route('/me', methods=['PATCH'])
@jwt_required()
def update_me():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateProfileSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if 'username' in result:
        user.username = result['username']

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Profile update error for {user.email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Update failed due to server error'}), 500

    logger.info(f"User profile updated: {user.email}")
    return jsonify({
        'message': 'Profile updated successfully',
        'user': user_summary(user)
    }), 200


@auth_bp.route('/me', methods=['DELETE'])
@jwt_required()
def delete_me():
    """
    Delete (deactivate) the account

    The row is kept because tasks and activity logs reference it;
    the account can no longer log in and the current token is revoked.
    """
    user = get_current_user()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    try:
        user.is_active = False
        revoke_current_token()
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Account deletion error for {user.email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Account deletion failed due to server error'}), 500

    logger.info(f"Account deactivated: {user.email}")
    return jsonify({'message': 'Account deleted successfully'}), 200


@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(ChangePasswordSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if not bcrypt.check_password_hash(user.password_hash, result['current_password']):
        return jsonify({'error': 'Current password is incorrect'}), 401

    user.password_hash = bcrypt.generate_password_hash(result['new_password']).decode('utf-8')

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Password change error for {user.email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Password change failed due to server error'}), 500

    logger.info(f"Password changed for user: {user.email}")
    return jsonify({'message': 'Password changed successfully'}), 200
