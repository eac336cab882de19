import asyncio
import sys
import argparse
from pathlib import Path

# Add project root to sys.path
project_root = Path(__file__).resolve().parent.parent
sys.path.append(str(project_root))

from src.models.errors import FeedValidationError, NotFoundError
from src.workflows.pipeline import pipeline

async def list_feeds():
    """List all subscribed feeds."""
    feeds = await pipeline.db.list_feeds()
    if not feeds:
        print("\nNo feeds subscribed.")
        return

    print(f"\nSubscribed Feeds ({len(feeds)}):")
    for feed in feeds:
        last = feed.last_fetched_at.strftime("%Y-%m-%d %H:%M") if feed.last_fetched_at else "never"
        print(f"- [{feed.status.value}] {feed.title} ({feed.id})")
        print(f"    {feed.url} | every {feed.fetch_interval_minutes} min | {feed.item_count} items | last fetched {last}")
        if feed.last_error:
            print(f"    last error: {feed.last_error}")

async def add_feed(url: str, title: str = None, interval: int = None):
    """Validate and subscribe to a feed."""
    try:
        feed = await pipeline.subscribe_feed(url, title=title, fetch_interval=interval)
    except FeedValidationError as e:
        print(f"Error: {e}")
        return
    print(f"Subscribed to '{feed.title}' ({feed.id}). Fetching first items...")

async def set_feed_state(feed_id: str, action: str):
    """Pause, resume or remove a feed."""
    try:
        if action == 'pause':
            feed = await pipeline.pause_feed(feed_id)
            print(f"Paused '{feed.title}'.")
        elif action == 'resume':
            feed = await pipeline.resume_feed(feed_id)
            print(f"Resumed '{feed.title}'.")
        else:
            await pipeline.remove_feed(feed_id)
            print(f"Removed feed {feed_id} and its items.")
    except NotFoundError as e:
        print(f"Error: {e}")

async def refresh_feed(feed_id: str):
    """Poll a feed immediately."""
    result = await pipeline.refresh_feed(feed_id)
    if result.success:
        print(f"Refreshed: {result.items_added} new items.")
    else:
        print(f"Refresh failed: {result.error}")

async def rebuild_connections():
    created = await pipeline.rebuild_connections()
    print(f"Rebuilt connection graph: {created} connections.")

async def reenrich(limit: int = None):
    outcomes = await pipeline.reenrich_pending(limit)
    failed = [o for o in outcomes if not o.succeeded]
    print(f"Re-enriched {len(outcomes) - len(failed)} of {len(outcomes)} items.")
    for outcome in failed:
        print(f"- {outcome.item_id}: {outcome.failed_step} failed ({outcome.error})")

async def show_stats():
    stats = await pipeline.stats()
    print("\nFeeds:", stats["feeds"], stats["feeds_by_status"])
    print("Items:", stats["items"])
    print("Connections:", stats["connections"])
    print("Pending notifications:", stats["notifications"])
    feedback = stats["feedback"]
    print(f"Feedback events: {feedback['total_feedback']} across {feedback['total_topics']} topics")
    for entry in feedback["top_positive_topics"]:
        print(f"  + {entry['topic']} ({entry['count']}, weight {entry['weight']:.2f})")
    for entry in feedback["top_negative_topics"]:
        print(f"  - {entry['topic']} ({entry['count']}, weight {entry['weight']:.2f})")

async def show_trending(days: int, limit: int, kind: str):
    labels = await pipeline.trending(days_back=days, limit=limit, kind=None if kind == 'all' else kind)
    if not labels:
        print(f"\nNothing published in the last {days} days.")
        return
    print(f"\nTrending over the last {days} days:")
    for entry in labels:
        print(f"- {entry.label} [{entry.kind}] score {entry.trending_score:.2f}, {entry.item_count} items")
        for article in entry.recent_items:
            print(f"    {article.published_at.strftime('%Y-%m-%d')} {article.title}")

async def set_item_flag(item_id: str, command: str):
    try:
        if command == 'read':
            item = await pipeline.mark_read(item_id)
            print(f"Marked '{item.title}' as read.")
        else:
            item = await pipeline.set_favorite(item_id)
            print(f"Added '{item.title}' to favorites.")
    except NotFoundError as e:
        print(f"Error: {e}")

async def main():
    parser = argparse.ArgumentParser(description="Manage subscribed feeds")
    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    subparsers.add_parser('list', help='List all subscribed feeds')

    add_parser = subparsers.add_parser('add', help='Subscribe to a feed')
    add_parser.add_argument('url', help='Feed URL (RSS or Atom)')
    add_parser.add_argument('--title', help='Display title (defaults to the feed title)')
    add_parser.add_argument('--interval', type=int, help='Fetch interval in minutes')

    for action in ('pause', 'resume', 'remove', 'refresh'):
        action_parser = subparsers.add_parser(action, help=f'{action.capitalize()} a feed')
        action_parser.add_argument('feed_id', help='Feed id (see list)')

    subparsers.add_parser('rebuild-connections', help='Recompute the whole connection graph')

    reenrich_parser = subparsers.add_parser('reenrich', help='Retry enrichment for incomplete items')
    reenrich_parser.add_argument('--limit', type=int, help='Maximum number of items')

    subparsers.add_parser('stats', help='Show feed, item and feedback statistics')

    trending_parser = subparsers.add_parser('trending', help='Show trending topics and entities')
    trending_parser.add_argument('--days', type=int, default=7, help='Look-back window in days')
    trending_parser.add_argument('--limit', type=int, default=10, help='Maximum number of labels')
    trending_parser.add_argument('--kind', choices=['topic', 'entity', 'all'], default='topic')

    for command in ('read', 'favorite'):
        item_parser = subparsers.add_parser(command, help=f'Mark an item as {command}')
        item_parser.add_argument('item_id', help='Item id')

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    await pipeline.db.init()
    try:
        if args.command == 'list':
            await list_feeds()
        elif args.command == 'add':
            await add_feed(args.url, args.title, args.interval)
        elif args.command in ('pause', 'resume', 'remove'):
            await set_feed_state(args.feed_id, args.command)
        elif args.command == 'refresh':
            await refresh_feed(args.feed_id)
        elif args.command == 'rebuild-connections':
            await rebuild_connections()
        elif args.command == 'reenrich':
            await reenrich(args.limit)
        elif args.command == 'stats':
            await show_stats()
        elif args.command == 'trending':
            await show_trending(args.days, args.limit, args.kind)
        elif args.command in ('read', 'favorite'):
            await set_item_flag(args.item_id, args.command)
    finally:
        # Let background first polls and enrichment finish before exiting
        await pipeline.shutdown()

if __name__ == "__main__":
    asyncio.run(main())
