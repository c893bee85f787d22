from flask import Blueprint, request

from siteorganizer.services.common import error_response
from siteorganizer.services.postgrest import get_supabase


api_bp = Blueprint("api", __name__, url_prefix="/api")

# Endpoints that answer without a Supabase project behind them.
UNPROXIED_ENDPOINTS = {"api.health", "api.import_parse"}


@api_bp.before_request
def require_supabase():
    if request.endpoint in UNPROXIED_ENDPOINTS:
        return None
    if not get_supabase().configured:
        return error_response("Missing Supabase configuration", 500)
    return None


from siteorganizer.api import data_routes, routes  # noqa: E402,F401
