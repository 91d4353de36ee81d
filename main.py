#!/usr/bin/env python3
"""
Builder auth - login strategies, workstation PKCE flow and session cookies.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep builder imports lazy (inside functions) so `--help` works without
# the server dependencies installed.
#


def init_db() -> None:
    """Create the users/projects tables used by the Postgres user directory."""
    import psycopg

    from builder.auth.config import load_auth_config
    from builder.auth.users import ensure_schema

    cfg = load_auth_config()
    if not cfg.database_url:
        raise SystemExit("DATABASE_URL is not configured")
    with psycopg.connect(cfg.database_url) as conn:
        ensure_schema(conn)
    print("Schema is up to date")


def issue_token(user_id: str, project_id: str, ttl: int) -> None:
    """Mint a project-scoped workstation token (operators, smoke tests)."""
    from builder.auth.config import load_auth_config
    from builder.auth.token import create_access_token

    cfg = load_auth_config()
    if not cfg.ws_client_secret:
        raise SystemExit("AUTH_WS_CLIENT_SECRET is not configured")
    print(create_access_token(cfg.ws_client_secret, user_id=user_id, project_id=project_id, ttl=ttl))


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Builder authentication server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the HTTP server
  python main.py --serve --port 8080

  # Create database tables
  python main.py --init-db

  # Mint a workstation token for project abc
  python main.py --issue-token --user-id u1 --project-id abc
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the auth HTTP server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--init-db", action="store_true", help="Create the user/project tables")
    parser.add_argument("--issue-token", action="store_true", help="Print a project-scoped access token")
    parser.add_argument("--user-id", help="User id for --issue-token")
    parser.add_argument("--project-id", help="Project id for --issue-token")
    parser.add_argument("--ttl", type=int, default=3600, help="Token lifetime in seconds (default: 3600)")

    args = parser.parse_args()

    if args.serve:
        from builder.api.server import run

        run(host=args.host, port=args.port)
        return

    if args.init_db:
        init_db()
        return

    if args.issue_token:
        if not args.user_id or not args.project_id:
            parser.error("--issue-token requires --user-id and --project-id")
        issue_token(args.user_id, args.project_id, args.ttl)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
