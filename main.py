import argparse
import asyncio
import json
import logging
import sys

from predictgate.auth.access_codes import AccessCodeService
from predictgate.config import GatewaySettings
from predictgate.db.database import Database
from predictgate.exceptions import ConfigurationError

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


async def _with_access_codes(settings: GatewaySettings, action):
    db = Database(settings.database_url)
    try:
        await db.create_all()
        return await action(AccessCodeService(db))
    finally:
        await db.dispose()


def _serve(args, settings: GatewaySettings) -> int:
    from api.app import start

    settings.validate_required()
    start(host=args.host, port=args.port, settings=settings)
    return 0


def _create_access_code(args, settings: GatewaySettings) -> int:
    code = asyncio.run(
        _with_access_codes(
            settings,
            lambda svc: svc.create_access_code(
                created_by=args.created_by,
                developer_name=args.name,
                developer_email=args.email,
                notes=args.notes,
                max_uses=args.max_uses,
                expires_in_days=args.expires_in_days,
            ),
        )
    )
    print(code.code)
    return 0


def _list_access_codes(args, settings: GatewaySettings) -> int:
    codes = asyncio.run(_with_access_codes(settings, lambda svc: svc.list_access_codes()))
    print(json.dumps([code.model_dump(mode="json") for code in codes], indent=2))
    return 0


def _revoke_access_code(args, settings: GatewaySettings) -> int:
    revoked = asyncio.run(_with_access_codes(settings, lambda svc: svc.revoke_access_code(args.code)))
    print("revoked" if revoked else "not found")
    return 0 if revoked else 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Prediction-market trading gateway")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Start the MCP server")
    serve.add_argument("--host", default="0.0.0.0", help="Server host")
    serve.add_argument("--port", default=3002, type=int, help="Server port")
    serve.set_defaults(func=_serve)

    create = sub.add_parser("create-access-code", help="Issue a signup access code")
    create.add_argument("--created-by", default="admin")
    create.add_argument("--name", help="Developer name")
    create.add_argument("--email", help="Developer email")
    create.add_argument("--notes")
    create.add_argument("--max-uses", type=int, default=1, help="-1 for unlimited")
    create.add_argument("--expires-in-days", type=int)
    create.set_defaults(func=_create_access_code)

    listing = sub.add_parser("list-access-codes", help="List access codes")
    listing.set_defaults(func=_list_access_codes)

    revoke = sub.add_parser("revoke-access-code", help="Deactivate an access code")
    revoke.add_argument("code", help="Code or id")
    revoke.set_defaults(func=_revoke_access_code)

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = GatewaySettings.load()
        return args.func(args, settings)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
