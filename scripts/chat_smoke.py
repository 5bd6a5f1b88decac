from __future__ import annotations

import argparse
import asyncio
import sys

from smartchat.apps.api.deps import build_chat_pipeline
from smartchat.core.errors import ConfigurationError, ProviderError
from smartchat.domain.chat import Caller, ConversationTurn
from smartchat.persistence.db import SessionLocal
from smartchat.persistence.repos.memberships import list_team_ids


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ask one question through the configured chat pipeline."
    )
    parser.add_argument("--user", required=True, help="User id")
    parser.add_argument("--team", required=True, help="Active team id")
    parser.add_argument("--message", required=True, help="Question to ask")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    if isinstance(exc, ConfigurationError):
        return 2, f"CHAT_NOT_CONFIGURED: {exc}"
    if isinstance(exc, ProviderError):
        return 4, f"PROVIDER_ERROR: {exc}"
    return 1, f"UNKNOWN_ERROR: {exc}"


async def _run(args: argparse.Namespace) -> int:
    # Resolve memberships the same way the API does for trusted headers.
    async with SessionLocal() as session:
        team_ids = await list_team_ids(session, args.user)
    if args.team not in team_ids:
        print(f"AUTH_FORBIDDEN: {args.user} is not a member of {args.team}", file=sys.stderr)
        return 3
    caller = Caller(
        user_id=args.user,
        team_id=args.team,
        team_ids=(args.team,) + tuple(value for value in team_ids if value != args.team),
    )
    pipeline = await build_chat_pipeline()
    reply = await pipeline.run_turn([ConversationTurn(role="user", content=args.message)], caller)

    print(f"outcome={reply.outcome}")
    print(reply.answer)
    for suggestion in reply.suggestions:
        print(f"- {suggestion}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
