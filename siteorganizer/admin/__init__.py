from flask import Blueprint

from siteorganizer.services.common import error_response
from siteorganizer.services.postgrest import get_supabase


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.before_request
def require_service_key():
    client = get_supabase()
    if not client.configured or not client.has_service_key:
        return error_response("Server config error", 500)
    return None


from siteorganizer.admin import routes  # noqa: E402,F401
