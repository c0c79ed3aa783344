"""
Project permission documents and the authorization check built on them.

A permission document is a nested JSON object stored per named
``Permission``. Internal nodes are keyed by resource scope (``all``,
``id``, or a sub-resource such as ``task`` or ``member``); leaves map an
HTTP verb to a boolean::

    {"project": {"member": {"id": {"GET": true, "POST": false}}}}

A route declares a dotted key (``"project.member.id"``); the request is
allowed when the project owner makes it, or when the caller's document
resolves that key to a leaf whose flag for the request verb is ``true``.
Every other outcome, including lookup failures, is a denial.

Usage:
    @projects_bp.route('/<int:project_id>/members', methods=['POST'])
    @jwt_required()
    @require_permission('project.member.id')
    def add_project_member(project_id):
        ...
"""

from dataclasses import dataclass
from enum import Enum
from functools import wraps
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Protocol, Union
import logging

from flask import current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity

from models import db, Permission, Project, ProjectMember, User

logger = logging.getLogger(__name__)

VERBS = frozenset({'GET', 'POST', 'PUT', 'DELETE'})

# Request methods that share a flag with one of VERBS
METHOD_ALIASES = {
    'PATCH': 'PUT',
    'HEAD': 'GET',
}

# ============================================
# Permission document tree
# ============================================

class InvalidPermissionDocument(ValueError):
    """Raised when stored or submitted permission JSON has the wrong shape."""


@dataclass(frozen=True)
class PermissionLeaf:
    grants: Mapping[str, bool]

    def allows(self, verb: str) -> bool:
        return self.grants.get(verb) is True


@dataclass(frozen=True)
class PermissionBranch:
    children: Mapping[str, 'PermissionNode']


PermissionNode = Union[PermissionBranch, PermissionLeaf]


def parse_permission_document(raw: Any) -> PermissionBranch:
    """
    Validate raw permission JSON and build an immutable tree from it.

    An object whose keys are all verbs is a leaf and every value must be a
    boolean. Any other object is a branch. Objects mixing verb and non-verb
    keys, and non-object values, are rejected.

    Raises:
        InvalidPermissionDocument: the document does not have this shape
    """
    if not isinstance(raw, dict):
        raise InvalidPermissionDocument('permission document must be an object')

    node = _parse_node(raw, path='')
    if isinstance(node, PermissionLeaf):
        raise InvalidPermissionDocument('permission document root cannot be a verb leaf')
    return node


def _parse_node(raw: Any, path: str) -> PermissionNode:
    where = path or '<root>'
    if not isinstance(raw, dict):
        raise InvalidPermissionDocument(f'{where}: expected an object, got {type(raw).__name__}')

    keys = set(raw)
    verb_keys = keys & VERBS

    if verb_keys and verb_keys != keys:
        raise InvalidPermissionDocument(
            f'{where}: verb keys cannot be mixed with scope keys ({", ".join(sorted(keys - VERBS))})'
        )

    if verb_keys:
        for verb, flag in raw.items():
            if not isinstance(flag, bool):
                raise InvalidPermissionDocument(f'{where}.{verb}: expected a boolean')
        return PermissionLeaf(MappingProxyType(dict(raw)))

    children = {}
    for segment, child in raw.items():
        if not isinstance(segment, str) or not segment or '.' in segment:
            raise InvalidPermissionDocument(f'{where}: invalid scope name {segment!r}')
        children[segment] = _parse_node(child, f'{path}.{segment}' if path else segment)
    return PermissionBranch(MappingProxyType(children))


def build_document(grant, scopes=('task', 'member', 'label', 'status', 'permission')):
    """
    Build a raw project document granting ``grant(scope, verb)`` everywhere.

    Used to seed the global templates.
    """
    def leaf(scope, kind):
        verbs = ('GET',) if kind == 'all' else ('GET', 'POST', 'PUT', 'DELETE')
        return {verb: bool(grant(scope, verb)) for verb in verbs}

    project = {
        'all': leaf('project', 'all'),
        'id': leaf('project', 'id'),
    }
    for scope in scopes:
        project[scope] = {'all': leaf(scope, 'all'), 'id': leaf(scope, 'id')}
    return {'project': project}


SUPER_ADMIN_DOCUMENT = build_document(lambda scope, verb: True)
VIEWER_DOCUMENT = build_document(lambda scope, verb: verb == 'GET' and scope != 'permission')

SUPER_ADMIN = 'Super Admin'

DEFAULT_TEMPLATES = {
    SUPER_ADMIN: SUPER_ADMIN_DOCUMENT,
    'Viewer': VIEWER_DOCUMENT,
}


def get_or_create_template(name):
    """Fetch a global template by name, creating it from DEFAULT_TEMPLATES if missing (caller commits)"""
    template = Permission.query.filter_by(name=name, project_id=None).first()
    if template is None:
        template = Permission(name=name, document=DEFAULT_TEMPLATES[name])
        db.session.add(template)
        db.session.flush()
    return template


def seed_default_templates():
    return [get_or_create_template(name) for name in DEFAULT_TEMPLATES]

# ============================================
# Authorization
# ============================================

class Decision(Enum):
    ALLOW = 'allow'
    DENY = 'deny'


class DenyReason(Enum):
    MISSING_CONTEXT = 'missing_context'
    NO_MEMBERSHIP = 'no_membership'
    MALFORMED_PATH = 'malformed_path'
    VERB_NOT_GRANTED = 'verb_not_granted'
    COLLABORATOR_FAILURE = 'collaborator_failure'


@dataclass(frozen=True)
class AuthorizationRequest:
    principal_id: Any
    project_id: Any
    permission_key: str
    verb: str


@dataclass(frozen=True)
class AuthorizationResult:
    decision: Decision
    reason: str

    @property
    def allowed(self):
        return self.decision is Decision.ALLOW


class MembershipLookup(Protocol):
    def is_admin(self, project_id, user_id) -> bool:
        ...

    def get_permission_document(self, project_id, user_id) -> Optional[PermissionBranch]:
        ...


class _Denied(Exception):
    def __init__(self, reason: DenyReason):
        super().__init__(reason.value)
        self.reason = reason


def walk(document: PermissionBranch, permission_key: str, verb: str) -> Decision:
    """Resolve a dotted key against a document; pure, never raises."""
    try:
        _walk(document, permission_key, verb)
    except _Denied:
        return Decision.DENY
    return Decision.ALLOW


def _walk(document, permission_key, verb):
    node = document
    for segment in permission_key.split('.'):
        if not isinstance(node, PermissionBranch) or segment not in node.children:
            raise _Denied(DenyReason.MALFORMED_PATH)
        node = node.children[segment]

    if not isinstance(node, PermissionLeaf):
        raise _Denied(DenyReason.MALFORMED_PATH)
    if not node.allows(verb):
        raise _Denied(DenyReason.VERB_NOT_GRANTED)


def _is_absent(value):
    return value is None or value == ''


class AuthorizationResolver:
    """
    Decide ALLOW or DENY for one request.

    Holds no state besides the lookup; safe to share between threads.
    """

    def __init__(self, lookup: MembershipLookup):
        self.lookup = lookup

    def resolve(self, auth_request: AuthorizationRequest) -> Decision:
        return self.explain(auth_request).decision

    def explain(self, auth_request: AuthorizationRequest) -> AuthorizationResult:
        # Every denial path ends here
        try:
            reason = self._check(auth_request)
        except _Denied as denied:
            return AuthorizationResult(Decision.DENY, denied.reason.value)
        return AuthorizationResult(Decision.ALLOW, reason)

    def _check(self, auth_request):
        """Return why the request is allowed, or raise _Denied."""
        project_id = auth_request.project_id
        principal_id = auth_request.principal_id

        if _is_absent(project_id) or _is_absent(principal_id):
            raise _Denied(DenyReason.MISSING_CONTEXT)

        try:
            if self.lookup.is_admin(project_id, principal_id):
                return 'admin'
            document = self.lookup.get_permission_document(project_id, principal_id)
        except Exception:
            logger.warning(
                f"Permission lookup failed for user {principal_id} on project {project_id}",
                exc_info=True
            )
            raise _Denied(DenyReason.COLLABORATOR_FAILURE)

        if document is None:
            raise _Denied(DenyReason.NO_MEMBERSHIP)

        _walk(document, auth_request.permission_key or '', auth_request.verb)
        return 'granted'


class SqlMembershipLookup:
    """
    MembershipLookup backed by the Project / ProjectMember / Permission tables.

    Deactivated accounts are neither admin nor member of anything.
    """

    def is_admin(self, project_id, user_id):
        # Closed projects keep their owner as admin
        owner = db.session.query(Project.id).join(User, User.id == Project.owner_id).filter(
            Project.id == int(project_id),
            Project.owner_id == int(user_id),
            User.is_active.is_(True)
        ).first()
        return owner is not None

    def get_permission_document(self, project_id, user_id):
        member = ProjectMember.query.join(User, User.id == ProjectMember.user_id).filter(
            ProjectMember.project_id == int(project_id),
            ProjectMember.user_id == int(user_id),
            User.is_active.is_(True)
        ).first()

        if member is None or member.permission is None:
            return None

        return parse_permission_document(member.permission.document)

# ============================================
# Flask integration
# ============================================

def get_resolver() -> AuthorizationResolver:
    resolver = current_app.extensions.get('authorization_resolver')
    if resolver is None:
        resolver = AuthorizationResolver(SqlMembershipLookup())
        current_app.extensions['authorization_resolver'] = resolver
    return resolver


def request_verb(method: str) -> str:
    method = (method or '').upper()
    return METHOD_ALIASES.get(method, method)


def _as_project_id(value):
    """An int (not bool) or a digit-only string; anything else counts as absent."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None


def _request_project_id():
    project_id = (request.view_args or {}).get('project_id')
    if project_id is None:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            project_id = body.get('project_id')
    return _as_project_id(project_id)


def require_permission(permission_key: str) -> Callable:
    """
    Decorator factory for project-scoped routes.

    Must sit below ``@jwt_required()`` so the identity is available.
    Answers 403 on denial; the body never says why.
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            auth_request = AuthorizationRequest(
                principal_id=get_jwt_identity(),
                project_id=_request_project_id(),
                permission_key=permission_key,
                verb=request_verb(request.method),
            )
            result = get_resolver().explain(auth_request)

            if not result.allowed:
                logger.info(
                    f"Permission denied ({result.reason}): user {auth_request.principal_id} "
                    f"{auth_request.verb} {permission_key} on project {auth_request.project_id}"
                )
                return jsonify({'error': 'Not permitted'}), 403

            return view(*args, **kwargs)
        return wrapper
    return decorator
