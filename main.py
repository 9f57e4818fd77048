#!/usr/bin/env python3
"""
sessionguard -- Issue, verify, renew and revoke access/refresh token pairs.

Usage:
  python main.py keys
  python main.py issue --subject u1 --role admin --tenant t1
  python main.py verify "Bearer eyJ..."
  python main.py renew --access eyJ... --refresh eyJ... --csrf abc...
  python main.py revoke --access eyJ... --refresh eyJ...
  python main.py scoped --subject u1
  python main.py prune

Output is JSON on stdout. Token failures print {"error": {"code", "message"}}
and exit with status 1.

Environment variables (see core/config.py):
  SIGNING_ALGORITHM  HS256 (default), HS512 or RS256
  SECRET_KEY         Required for HS256/HS512 unless DEBUG=true
  KEY_DIR, KEY_NAME  RS256 keypair location (default assets/keys/jwt.rsa)
  DATABASE_URL       Revocation store for REVOCATION_BACKEND=sql
  REDIS_URL          Revocation store for REVOCATION_BACKEND=redis
"""

import argparse
import json
import logging
import sys
from typing import Optional

from auth.errors import KeyInitializationError, TokenError
from auth.keys import load_or_generate_rsa_keys, rsa_key_paths
from auth.tokens import TokenService
from core.config import Settings, get_settings

logger = logging.getLogger("sessionguard.cli")


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr so stdout stays machine-readable."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def _emit(data: dict) -> None:
    print(json.dumps(data, indent=2))


def _cmd_keys(settings: Settings, args: argparse.Namespace) -> dict:
    load_or_generate_rsa_keys(settings.key_dir, settings.key_name)
    private_path, public_path = rsa_key_paths(settings.key_dir, settings.key_name)
    return {"private_key": str(private_path), "public_key": str(public_path)}


def _cmd_issue(service: TokenService, args: argparse.Namespace) -> dict:
    issued = service.generate_token(args.subject, args.role, args.tenant)
    return issued._asdict()


def _cmd_verify(service: TokenService, args: argparse.Namespace) -> dict:
    _, claims = service.verify_token(args.token)
    return {
        "subject": claims.subject,
        "role": claims.role,
        "tenant": claims.tenant,
        "expires_at": claims.expires_at,
    }


def _cmd_renew(service: TokenService, args: argparse.Namespace) -> dict:
    return service.renew_token(args.access, args.refresh, args.csrf)._asdict()


def _cmd_revoke(service: TokenService, args: argparse.Namespace) -> dict:
    service.delete_token(args.access, args.refresh)
    return {"revoked": True}


def _cmd_scoped(service: TokenService, args: argparse.Namespace) -> dict:
    return {"token": service.generate_scoped_token(args.subject, channels=args.channel or None)}


def _cmd_prune(service: TokenService, args: argparse.Namespace) -> dict:
    removed = service.prune_blocked_tokens()
    return {"removed": removed, **service.cache.stats()}


_SERVICE_COMMANDS = {
    "issue": _cmd_issue,
    "verify": _cmd_verify,
    "renew": _cmd_renew,
    "revoke": _cmd_revoke,
    "scoped": _cmd_scoped,
    "prune": _cmd_prune,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessionguard",
        description="Token lifecycle tool: issue, verify, renew and revoke signed tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py issue --subject u1 --role admin --tenant t1
  python main.py verify "Bearer <access token>"
  SIGNING_ALGORITHM=RS256 python main.py keys
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("keys", help="Create the RS256 keypair under KEY_DIR if it does not exist")

    issue = sub.add_parser("issue", help="Issue an access/refresh token pair")
    issue.add_argument("--subject", required=True, help="Opaque user identifier")
    issue.add_argument("--role", default="", help="Role claim (carried opaquely)")
    issue.add_argument("--tenant", default="", help="Tenant claim (carried opaquely)")

    verify = sub.add_parser("verify", help="Verify an access token")
    verify.add_argument("token", help='Access token, optionally prefixed with "Bearer "')

    renew = sub.add_parser("renew", help="Renew a token pair")
    renew.add_argument("--access", required=True)
    renew.add_argument("--refresh", required=True)
    renew.add_argument("--csrf", required=True, help="CSRF secret returned at issuance")

    revoke = sub.add_parser("revoke", help="Revoke a token pair")
    revoke.add_argument("--access", required=True)
    revoke.add_argument("--refresh", required=True)

    scoped = sub.add_parser("scoped", help="Mint a channel-scoped token for the real-time server")
    scoped.add_argument("--subject", required=True)
    scoped.add_argument(
        "--channel",
        action="append",
        metavar="NAME",
        help="Channel to authorize (repeatable; default: SCOPED_TOKEN_CHANNELS)",
    )

    sub.add_parser("prune", help="Delete expired blocked tokens from the revocation store")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "keys":
        try:
            _emit(_cmd_keys(settings, args))
        except KeyInitializationError as e:
            logger.error("Key bootstrap failed: %s", e)
            return 1
        return 0

    service = TokenService.from_settings(settings)
    try:
        _emit(_SERVICE_COMMANDS[args.command](service, args))
    except TokenError as e:
        _emit({"error": {"code": e.code, "message": str(e)}})
        return 1
    except ValueError as e:
        _emit({"error": {"code": "invalid_request", "message": str(e)}})
        return 1
    finally:
        service.store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
