# Overview: Request, permission and error-mapping decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .extensions import db
from .services import session_service, permission_service
from .services.deal_workflow import TransitionError
from .services.payment_service import PaymentError
from .services.permission_service import PermissionDeniedError
from .validation import ValidationError, ConflictError, NotFoundError


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def require_auth(f):
    """
    Require a valid bearer token.

    Sets g.current_user to the authenticated User.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, revoked or expired token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        user = session_service.validate_session(token)

        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission_code: str):
    """Require a specific permission (after @require_auth)."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            try:
                permission_service.require_permission(
                    g.current_user,
                    permission_code,
                    resource=request.path,
                )
            except PermissionDeniedError as e:
                return jsonify({
                    "error": "Permission denied",
                    "required_permission": permission_code,
                    "message": str(e)
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_any_permission(*permission_codes):
    """Require any of the specified permissions (after @require_auth)."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            user = g.current_user
            user_permissions = permission_service.get_user_permissions(user)
            if not any(code in user_permissions for code in permission_codes):
                current_app.logger.warning(
                    "Permission denied: user=%s role=%s any_of=%s resource=%s",
                    user.id, user.role, ",".join(permission_codes), request.path,
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_permissions": list(permission_codes),
                    "message": f"Requires any of: {', '.join(permission_codes)}"
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def handle_domain_errors(failure_message: str):
    """
    Map domain exceptions raised by a route to JSON error responses.

        ValidationError, PaymentError   -> 400
        PermissionDeniedError           -> 403
        NotFoundError                   -> 404
        TransitionError, ConflictError  -> 409
        anything else                   -> 500 (logged, session rolled back)
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except PermissionDeniedError as e:
                return jsonify({"error": "Permission denied", "message": str(e)}), 403
            except NotFoundError as e:
                return jsonify({"error": str(e)}), 404
            except (TransitionError, ConflictError) as e:
                return jsonify({"error": str(e)}), 409
            except (ValidationError, PaymentError) as e:
                return jsonify({"error": str(e)}), 400
            except Exception:
                db.session.rollback()
                current_app.logger.exception(failure_message)
                return jsonify({"error": "Internal server error"}), 500

        return decorated_function
    return decorator
