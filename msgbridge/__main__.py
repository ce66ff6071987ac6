"""
Unified CLI entry point for the message bridge.

Runs the HTTP service and gives operators access to the retry sweep,
statistics, failed relations and bridge policies.
"""

import argparse
import asyncio
import sys


def create_parser() -> argparse.ArgumentParser:
    """Argument parser for the msgbridge CLI."""
    parser = argparse.ArgumentParser(
        prog='msgbridge',
        description='msgbridge - Messaging <-> helpdesk synchronization bridge',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
GETTING STARTED:

  1. Configure a session's mirror inbox:
     msgbridge policy S1 --enable --mirror-url https://chatwoot.example.com \\
         --account-id 1 --inbox-id 7 --token <api token>

  2. Run the service (HTTP API + scheduled retry sweep):
     msgbridge serve

  3. Inspect and repair:
     msgbridge stats S1              # Chats, messages, relations by status
     msgbridge list-failed S1        # Relations waiting for retry or an operator
     msgbridge sweep                 # Run the retry sweep once, now

Configuration is read from environment variables (DATABASE_URL, PORT,
RETRY_SCHEDULE, SESSION_GATEWAY_URL, WEBHOOK_URL, ...).
"""
    )

    parser.add_argument(
        '--database-url',
        metavar='URL',
        help='Database URL (default: DATABASE_URL or DB_* variables)'
    )

    subparsers = parser.add_subparsers(
        dest='command',
        help='Bridge command',
        metavar='<command>'
    )

    serve_parser = subparsers.add_parser(
        'serve',
        help='Run the HTTP API and retry scheduler',
        description='Start the HTTP API. The retry sweep runs according to RETRY_SCHEDULE.'
    )
    serve_parser.add_argument('--host', help='Bind address (default: HOST or 0.0.0.0)')
    serve_parser.add_argument('--port', type=int, help='Port (default: PORT or 8080)')
    serve_parser.add_argument('--no-scheduler', action='store_true', help='Do not run the retry sweep')

    subparsers.add_parser(
        'schedule',
        help='Run only the retry sweep scheduler',
        description='Run the retry sweep on RETRY_SCHEDULE without the HTTP API.'
    )

    sweep_parser = subparsers.add_parser(
        'sweep',
        help='Run the retry sweep once',
        description='Retry due failed relations of every enabled session, or of one session.'
    )
    sweep_parser.add_argument('-s', '--session', help='Only this session')

    stats_parser = subparsers.add_parser(
        'stats',
        help='Show session statistics',
        description='Display chat, message and relation counts of a session.'
    )
    stats_parser.add_argument('session', help='Session id')

    list_parser = subparsers.add_parser(
        'list-chats',
        help='List chats of a session',
        description='Show a table of the chats of a session, most recent first.'
    )
    list_parser.add_argument('session', help='Session id')
    list_parser.add_argument('--archived', action='store_true', help='Include archived chats')
    list_parser.add_argument('-n', '--limit', type=int, default=50)

    failed_parser = subparsers.add_parser(
        'list-failed',
        help='List failed sync relations',
        description='Show failed relations of a session, oldest first.'
    )
    failed_parser.add_argument('session', help='Session id')
    failed_parser.add_argument('-n', '--limit', type=int, default=100)

    purge_parser = subparsers.add_parser(
        'purge-relations',
        help='Delete every sync relation of a session',
        description='Administrative purge. Messages and chats are kept.'
    )
    purge_parser.add_argument('session', help='Session id')
    purge_parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation')

    policy_parser = subparsers.add_parser(
        'policy',
        help='Show or change the bridge policy of a session',
        description='Without options, print the policy. Options create or update it.'
    )
    policy_parser.add_argument('session', help='Session id')
    toggle = policy_parser.add_mutually_exclusive_group()
    toggle.add_argument('--enable', dest='enabled', action='store_true', default=None)
    toggle.add_argument('--disable', dest='enabled', action='store_false')
    policy_parser.add_argument('--exclude', action='append', metavar='ADDRESS',
                               help='Excluded address or @suffix (repeatable, replaces the list)')
    policy_parser.add_argument('--authority', choices=['platform', 'mirror'])
    policy_parser.add_argument('--history-days', type=int, dest='history_window_days',
                               help='Import history of the last N days (0 = all)')
    policy_parser.add_argument('--mirror-url')
    policy_parser.add_argument('--account-id', dest='mirror_account_id')
    policy_parser.add_argument('--inbox-id', dest='mirror_inbox_id')
    policy_parser.add_argument('--token', dest='mirror_token')
    policy_parser.add_argument('--reopen-conversation', action=argparse.BooleanOptionalAction, default=None,
                               help='Reuse a resolved conversation instead of opening a new one')
    policy_parser.add_argument('--conversation-pending', action=argparse.BooleanOptionalAction, default=None,
                               help='Open new conversations as pending')
    policy_parser.add_argument('--sign', dest='sign_delimiter', metavar='TEXT',
                               help='Append TEXT to agent replies (enables signing)')
    policy_parser.add_argument('--no-sign', dest='sign_messages', action='store_false', default=None,
                               help='Stop signing agent replies')

    return parser


async def _open_adapter(args):
    from .config import Config, setup_logging
    from .db import create_adapter

    config = Config()
    setup_logging(config)
    return config, await create_adapter(args.database_url or config.database_url)


async def run_stats(args) -> int:
    """Run stats command."""
    try:
        _, db = await _open_adapter(args)
        try:
            stats = await db.get_statistics(args.session)
        finally:
            await db.close()
    except Exception as e:
        print(f"Stats failed: {e}", file=sys.stderr)
        return 1

    print(f"Session:   {stats['session_id']}")
    print(f"Chats:     {stats['chats']}")
    print(f"Messages:  {stats['messages']}")
    print(f"Unread:    {stats['unread']}")
    print(f"Relations: {stats['relations']}")
    for status, count in stats['relations_by_status'].items():
        print(f"  {status:<9} {count}")
    return 0


async def run_list_chats(args) -> int:
    """Print the chats stored for one session."""
    try:
        _, db = await _open_adapter(args)
        try:
            chats = await db.chats.list_chats(args.session, include_archived=args.archived, limit=args.limit)
        finally:
            await db.close()
    except Exception as e:
        print(f"List chats failed: {e}", file=sys.stderr)
        return 1

    print(f"{'Address':<40} {'Name':<25} {'Unread':>6}  Last activity")
    print('-' * 95)
    for chat in chats:
        activity = chat.last_activity_at.strftime('%Y-%m-%d %H:%M') if chat.last_activity_at else '-'
        print(f"{chat.address:<40} {(chat.name or '')[:25]:<25} {chat.unread_count:>6}  {activity}")
    print(f"\n{len(chats)} chats")
    return 0


async def run_list_failed(args) -> int:
    """Run list-failed command."""
    try:
        _, db = await _open_adapter(args)
        try:
            relations = await db.relations.list_failed(args.session, limit=args.limit)
        finally:
            await db.close()
    except Exception as e:
        print(f"List failed relations failed: {e}", file=sys.stderr)
        return 1

    for relation in relations:
        kind = relation.error_kind.value if relation.error_kind else '-'
        print(
            f"#{relation.id} msg={relation.local_message_id} {relation.direction.value} "
            f"retries={relation.retry_count} {kind}: {relation.last_error or ''}"
        )
    print(f"\n{len(relations)} failed relations")
    return 0


async def run_purge(args) -> int:
    """Run purge-relations command."""
    if not args.yes:
        answer = input(f"Delete ALL sync relations of session {args.session}? [y/N] ")
        if answer.strip().lower() != 'y':
            print("Aborted")
            return 1
    try:
        _, db = await _open_adapter(args)
        try:
            purged = await db.relations.purge(args.session)
        finally:
            await db.close()
    except Exception as e:
        print(f"Purge failed: {e}", file=sys.stderr)
        return 1
    print(f"Purged {purged} relations")
    return 0


async def run_policy(args) -> int:
    """Run policy command."""
    from .db.serializers import policy_to_dict

    names = ('enabled', 'authority', 'history_window_days', 'mirror_url',
             'mirror_account_id', 'mirror_inbox_id', 'mirror_token',
             'reopen_conversation', 'conversation_pending', 'sign_messages', 'sign_delimiter')
    settings = {name: getattr(args, name) for name in names if getattr(args, name) is not None}
    if args.exclude is not None:
        settings['excluded_addresses'] = args.exclude
    if args.history_window_days is not None:
        settings['import_history'] = True
    if args.sign_delimiter is not None:
        settings['sign_messages'] = True

    try:
        _, db = await _open_adapter(args)
        try:
            if settings:
                policy = await db.policies.upsert(args.session, **settings)
            else:
                policy = await db.policies.get(args.session)
        finally:
            await db.close()
    except Exception as e:
        print(f"Policy failed: {e}", file=sys.stderr)
        return 1

    if policy is None:
        print(f"No policy for session {args.session}")
        return 1
    for key, value in policy_to_dict(policy).items():
        print(f"{key:<20} {value}")
    return 0


async def run_sweep(args) -> int:
    """Run the retry sweep once."""
    from .bridge import Bridge
    from .config import Config, setup_logging
    from .scheduler import RetryScheduler

    try:
        config = Config()
        setup_logging(config)
        bridge = await Bridge.create(config, database_url=args.database_url)
        try:
            if args.session:
                results = await bridge.retry_session(args.session)
                attempted = {args.session: len(results)}
            else:
                attempted = await RetryScheduler(config, bridge).run_sweep()
        finally:
            await bridge.close()
    except Exception as e:
        print(f"Sweep failed: {e}", file=sys.stderr)
        return 1

    for session_id, count in attempted.items():
        print(f"{session_id}: {count} relations retried")
    return 0


async def run_schedule(args) -> int:
    """Run the retry scheduler without the HTTP API."""
    from .bridge import Bridge
    from .config import Config, setup_logging
    from .scheduler import RetryScheduler

    try:
        config = Config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    setup_logging(config)
    bridge = await Bridge.create(config, database_url=args.database_url)
    try:
        await RetryScheduler(config, bridge, handle_signals=True).run_forever()
    finally:
        await bridge.close()
    return 0


def run_serve(args) -> int:
    """Run the HTTP API under uvicorn."""
    import uvicorn

    from .config import Config, setup_logging
    from .web.main import create_app

    try:
        config = Config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    if args.database_url:
        config.database_url = args.database_url
    setup_logging(config)

    app = create_app(config=config, run_scheduler=not args.no_scheduler)
    uvicorn.run(
        app,
        host=args.host or config.host,
        port=args.port or config.port,
        log_level=config.log_level.lower(),
    )
    return 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()

    # If no arguments, show help
    if len(sys.argv) == 1:
        parser.print_help()
        return 0

    args = parser.parse_args()

    # Subcommand dispatch
    if args.command == 'serve':
        return run_serve(args)
    elif args.command == 'schedule':
        return asyncio.run(run_schedule(args))
    elif args.command == 'sweep':
        return asyncio.run(run_sweep(args))
    elif args.command == 'stats':
        return asyncio.run(run_stats(args))
    elif args.command == 'list-chats':
        return asyncio.run(run_list_chats(args))
    elif args.command == 'list-failed':
        return asyncio.run(run_list_failed(args))
    elif args.command == 'purge-relations':
        return asyncio.run(run_purge(args))
    elif args.command == 'policy':
        return asyncio.run(run_policy(args))
    else:
        parser.print_help()
        return 0


if __name__ == '__main__':
    sys.exit(main())
