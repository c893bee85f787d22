import sys
import logging
import argparse
from siteorganizer import create_app

logging.getLogger('werkzeug').disabled = True
sys.modules['flask.cli'].show_server_banner = lambda *x: None

app = create_app()

def main() -> None:
    p = argparse.ArgumentParser(prog="siteorganizer", description="Site Organizer API server")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=3000)
    p.add_argument("--debug", action="store_true", help="enable Flask debug mode and the reloader")
    args = p.parse_args()

    supabase = app.extensions["supabase"]
    if not supabase.configured:
        app.logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set; proxied endpoints will return 500")
    elif not supabase.has_service_key:
        app.logger.warning("No service role key; relation writes and admin endpoints are unavailable")

    print(f"Site Organizer API on http://{args.host}:{args.port} -> {supabase.url or '(no Supabase)'}", flush=True)
    app.run(host=args.host, port=args.port, debug=args.debug)

if __name__ == "__main__":
    main()
