"""Inspect stored conversations and memories.

Usage examples:
    # Conversations, newest first
    python -m convomem conversations list

    # Full transcript of one conversation
    python -m convomem conversations show 1718000000000

    # Search memories
    python -m convomem memories search "dark mode"

    # Remove everything automatic memory has saved
    python -m convomem memories purge-auto

    # What a cleanup would find, then archive stale entries and merge duplicates
    python -m convomem memories cleanup --dry-run
    python -m convomem memories cleanup --max-age-days 180
"""

import argparse
import asyncio
import sys

from convomem.app import Services, build_services
from convomem.logging_setup import configure_logging
from convomem.memory.automatic import AUTO_SAVED_TAG
from convomem.memory.cleanup import CleanupConfig
from convomem.memory.models import SearchQuery


async def _list_conversations(services: Services, _args: argparse.Namespace) -> int:
    conversations = await services.conversations.get_all_conversations()
    if not conversations:
        print("No conversations.")
        return 0
    for conversation in conversations:
        updated = conversation.updated_at.strftime("%Y-%m-%d %H:%M")
        count = conversation.message_count
        print(f"{conversation.id}  {updated}  {count:>4}  {conversation.title}")
    return 0


async def _show_conversation(services: Services, args: argparse.Namespace) -> int:
    conversation = await services.conversations.get_conversation(args.id)
    if conversation is None:
        print(f"Conversation not found: {args.id}", file=sys.stderr)
        return 1
    print(f"# {conversation.title}")
    for message in conversation.messages:
        print(f"\n[{message.role}] {message.timestamp.isoformat()}")
        print(message.text())
    return 0


async def _search_memories(services: Services, args: argparse.Namespace) -> int:
    results = await services.memory_store.search(SearchQuery(text=args.text, limit=args.limit))
    if not results:
        print("No matching memories.")
        return 0
    for result in results:
        entry = result.entry
        print(f"{entry.id}  [{entry.type}]  {entry.title}")
        print(f"    tags: {', '.join(entry.tags)}  accessed: {entry.access_count}")
    return 0


async def _memory_stats(services: Services, _args: argparse.Namespace) -> int:
    stats = await services.memory_store.get_stats()
    print(f"Total entries: {stats.total_entries}")
    print(f"Total size:    {stats.total_size} bytes")
    for type_name, count in sorted(stats.entries_by_type.items()):
        print(f"  {type_name:<22} {count}")
    return 0


async def _purge_auto(services: Services, _args: argparse.Namespace) -> int:
    deleted = await services.memory_store.delete_by_tag(AUTO_SAVED_TAG)
    print(f"Deleted {deleted} auto-saved memories.")
    return 0


async def _cleanup_memories(services: Services, args: argparse.Namespace) -> int:
    if args.dry_run:
        report = await services.cleaner.get_cleanup_recommendations()
        for line in report.recommendations:
            print(line)
        return 0

    config = CleanupConfig(
        max_memories=args.max_memories,
        max_age_days=args.max_age_days,
        archive_old_memories=not args.delete_old,
        remove_unused_memories=args.min_access_count > 0,
        consolidate_duplicates=not args.keep_duplicates,
        min_access_count=args.min_access_count,
    )
    result = await services.cleaner.perform_cleanup(config)
    print(
        f"Cleanup: {result.deleted} deleted, {result.archived} archived, "
        f"{result.consolidated} consolidated"
    )
    print(f"Size: {result.size_before} -> {result.size_after} bytes")
    for error in result.errors:
        print(f"error: {error}", file=sys.stderr)
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="convomem", description=__doc__.splitlines()[0])
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    groups = parser.add_subparsers(dest="group", required=True)

    conversations = groups.add_parser("conversations", help="Stored conversations")
    conv_cmds = conversations.add_subparsers(dest="command", required=True)
    conv_cmds.add_parser("list", help="List conversations").set_defaults(
        handler=_list_conversations
    )
    show = conv_cmds.add_parser("show", help="Print one conversation")
    show.add_argument("id")
    show.set_defaults(handler=_show_conversation)

    memories = groups.add_parser("memories", help="Stored memories")
    mem_cmds = memories.add_subparsers(dest="command", required=True)
    search = mem_cmds.add_parser("search", help="Search memories by text")
    search.add_argument("text")
    search.add_argument("--limit", type=int, default=20)
    search.set_defaults(handler=_search_memories)
    mem_cmds.add_parser("stats", help="Memory statistics").set_defaults(handler=_memory_stats)
    mem_cmds.add_parser("purge-auto", help="Delete auto-saved memories").set_defaults(
        handler=_purge_auto
    )
    cleanup = mem_cmds.add_parser("cleanup", help="Archive, deduplicate and cap memories")
    cleanup.add_argument("--dry-run", action="store_true", help="Only print recommendations")
    cleanup.add_argument("--max-memories", type=int, default=1000)
    cleanup.add_argument("--max-age-days", type=int, default=365, help="0 disables the age rule")
    cleanup.add_argument(
        "--delete-old", action="store_true", help="Delete old memories instead of archiving"
    )
    cleanup.add_argument(
        "--min-access-count",
        type=int,
        default=0,
        help="Delete memories accessed fewer times than this",
    )
    cleanup.add_argument("--keep-duplicates", action="store_true")
    cleanup.set_defaults(handler=_cleanup_memories)
    return parser


async def _run(args: argparse.Namespace) -> int:
    services = build_services(cleanup=False)
    await services.start()
    try:
        return await args.handler(services, args)
    finally:
        await services.stop()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or "WARNING")
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
