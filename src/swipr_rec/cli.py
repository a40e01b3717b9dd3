import argparse
import json
import logging
import atexit
import re

from tqdm import tqdm

from .database import (
    init_db, close_pool, get_action_stats, get_item_similarity_meta,
    upsert_titles,
)
from .config import DEFAULT_LIMIT, DEFAULT_DISCOVERY_RATIO, NOTIFICATION_WEBHOOK_URL, REBUILD_INTERVAL
from .catalog import SqliteCatalog, Title
from .profile import InvalidActionError, make_action
from .service import RecommendationService, SimilarityRebuildScheduler

logger = logging.getLogger(__name__)

IMPORT_CHUNK_SIZE = 1000

atexit.register(close_pool)


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return

    try:
        import httpx

        httpx.post(
            NOTIFICATION_WEBHOOK_URL,
            json={"content": message},
            timeout=10,
        )
    except Exception as exc:  # pragma: no cover - best-effort notifications
        logger.warning(f"Failed to send notification: {exc}")


def _validate_user_id(user_id: str) -> str:
    """
    Sanitize a user id.
    Returns lowercased alphanumeric + underscores/hyphens/dots only.
    """
    sanitized = re.sub(r'[^a-z0-9_.-]', '', user_id.lower())
    if sanitized != user_id.lower():
        logger.warning(f"User id '{user_id}' sanitized to '{sanitized}'")
    return sanitized


def _ratio(value: str) -> float:
    ratio = float(value)
    if not 0.0 <= ratio <= 1.0:
        raise argparse.ArgumentTypeError(f"must be between 0 and 1, got {value}")
    return ratio


def _service() -> RecommendationService:
    init_db()
    return RecommendationService(SqliteCatalog())


def _load_json_records(path: str, key: str) -> list[dict]:
    """Accept either a bare JSON list or an object holding the list under ``key``."""
    with open(path, 'r') as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of {key}")
    return data


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the database schema."""
    init_db()
    logger.info("Database initialized")


def cmd_import_catalog(args: argparse.Namespace) -> None:
    """Import catalog titles from JSON."""
    init_db()
    records = _load_json_records(args.file, 'titles')
    titles = []
    for record in tqdm(records, desc="Parsing titles", disable=not records):
        try:
            titles.append(Title.from_dict(record).to_dict())
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed title {record!r:.80}: {e}")
    for i in range(0, len(titles), IMPORT_CHUNK_SIZE):
        upsert_titles(titles[i:i + IMPORT_CHUNK_SIZE])
    logger.info(f"Imported {len(titles)} titles from {args.file}")


def cmd_import_actions(args: argparse.Namespace) -> None:
    """
    Bulk import swipe history from JSON.

    Actions are logged through the service in timestamp order, so each
    user's seen-set, preference model and cached recommendations stay in
    step with the log. The item similarity table is rebuilt afterwards
    unless --no-rebuild is given.
    """
    service = _service()
    records = _load_json_records(args.file, 'actions')
    actions, rejected = [], 0
    for record in tqdm(records, desc="Validating actions", disable=not records):
        try:
            action = make_action(
                _validate_user_id(str(record.get('user_id') or '')),
                record.get('title_id'),
                record.get('kind'),
                record.get('genres'),
                record.get('language'),
                record.get('director'),
                record.get('timestamp'),
            )
        except InvalidActionError as e:
            rejected += 1
            logger.debug(f"Rejected action {record!r:.80}: {e}")
            continue
        actions.append(action)

    actions.sort(key=lambda a: a.timestamp)
    imported = service.import_actions(actions)
    logger.info(f"Imported {imported} actions ({rejected} rejected)")

    if not args.no_rebuild:
        pairs = service.rebuild_item_similarities()
        logger.info(f"Rebuilt item similarities: {pairs} pairs")


def cmd_swipe(args: argparse.Namespace) -> None:
    """Record one swipe."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    try:
        receipt = service.record_action(
            user_id, args.title_id, args.kind,
            genres=args.genres, language=args.language, director=args.director,
        )
    except InvalidActionError as e:
        logger.error(f"Rejected: {e}")
        return
    note = " (no change)" if receipt.duplicate else ""
    logger.info(f"Recorded {receipt.kind} on {receipt.title_id} for {user_id} "
                f"[seq {receipt.sequence}, model v{receipt.model_version}]{note}")


def cmd_undo(args: argparse.Namespace) -> None:
    """Undo the latest swipe on a title."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    if service.undo_action(user_id, args.title_id):
        logger.info(f"Undid latest action on {args.title_id} for {user_id}")
    else:
        logger.error(f"No action on {args.title_id} to undo for {user_id}")


def cmd_prefs(args: argparse.Namespace) -> None:
    """Set or show declared genre/language preferences."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    if args.genres is not None or args.languages is not None:
        declared = service.set_declared_preferences(user_id, args.genres or [], args.languages or [])
    else:
        declared = service.get_declared_preferences(user_id)
    logger.info(f"\nDeclared preferences for {user_id}")
    logger.info(f"  Genres: {', '.join(sorted(declared.genres)) or '(none)'}")
    logger.info(f"  Languages: {', '.join(sorted(declared.languages)) or '(none)'}")


def _output_recommendations(recs, user_id: str, fmt: str, explain: bool, degraded: bool) -> None:
    if fmt == 'json':
        print(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    if not recs:
        logger.info(f"No recommendations for {user_id}.")
        return

    header = f"\nRecommendations for {user_id}"
    if degraded:
        header += " (uncached)"
    logger.info(header + ":")
    logger.info("-" * 60)
    for i, rec in enumerate(recs, 1):
        marker = " *" if rec.is_discovery else ""
        logger.info(f"{i:2}. {rec.title or rec.title_id} [{rec.source}] {rec.score:.3f}{marker}")
        logger.info(f"    {rec.reason}")
        if explain:
            parts = ", ".join(f"{k}={v:.3f}" for k, v in rec.contributions.items() if v)
            if parts:
                logger.info(f"    contributions: {parts}")
            for key, value in rec.details.items():
                logger.info(f"    {key}: {value}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    result = service.get_recommendations(
        user_id,
        limit=args.limit,
        discovery_ratio=args.discovery_ratio,
        mark_served=args.mark_served,
    )
    if result.hit:
        logger.debug(f"Served from cache (expires {result.expires_at})")
    _output_recommendations(result.recommendations, user_id, args.format, args.explain, result.degraded)


def cmd_profile(args: argparse.Namespace) -> None:
    """Show a user's preference model."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    model = service.get_preference_model(user_id)

    if not model.action_count:
        logger.error(f"No actions for '{user_id}'. Record some with: swipr-rec swipe {user_id} TITLE KIND")
        return

    logger.info(f"\nPreference model for {user_id} (v{model.version})")
    logger.info(f"  Titles: {model.action_count} ({len(model.liked_titles)} liked, "
                f"{len(model.passed_titles)} passed, {len(model.unwatched_titles)} unwatched)")

    liked = model.liked_genre_counts
    if liked:
        logger.info("\nLiked genres (last 5 per genre):")
        for genre, count in sorted(liked.items(), key=lambda x: (-x[1], x[0])):
            logger.info(f"  {genre}: {'#' * count} ({count})")
    if model.disliked_genres:
        logger.info(f"\nDisliked genres: {', '.join(sorted(model.disliked_genres))}")
        if model.anime_penalty_active:
            logger.info("  Anime penalty active")
    if model.language_weights:
        logger.info("\nLanguages:")
        for lang, weight in sorted(model.language_weights.items(), key=lambda x: -x[1])[:10]:
            logger.info(f"  {lang}: {weight:.2f}")
    affinity = model.director_affinity
    if affinity:
        logger.info("\nDirectors:")
        for director, value in sorted(affinity.items(), key=lambda x: (-x[1], x[0]))[:10]:
            logger.info(f"  {director}: {value:.2f}")


def cmd_similar_users(args: argparse.Namespace) -> None:
    """Find users with similar swipe history."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    similar = service.similar_users(user_id, limit=args.limit)
    if not similar:
        logger.info(f"\nNo similar users found for {user_id}.")
        return
    logger.info(f"\nUsers similar to {user_id}:")
    logger.info("-" * 50)
    for sim in similar:
        logger.info(f"  {sim.user_id}: {sim.score:.2f} similarity "
                    f"({sim.common_likes} common likes, {sim.shared_titles} shared titles)")
        if args.verbose:
            parts = ", ".join(f"{k}={v:.2f}" for k, v in sim.components.items())
            logger.info(f"    {parts}")


def cmd_compare(args: argparse.Namespace) -> None:
    """Detailed comparison of two users."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    other_id = _validate_user_id(args.other_id)
    match = service.compare_users(user_id, other_id)
    logger.info(f"\n{user_id} vs {other_id}: {match.similarity.score:.2f} similarity")
    logger.info(f"  Common likes: {len(match.common_likes)}")
    logger.info(f"  Common passes: {len(match.common_passes)}")
    logger.info(f"  You liked, they passed: {len(match.you_liked_they_passed)}")
    if match.they_liked_you_havent:
        titles = service.catalog.get_titles(match.they_liked_you_havent[:10])
        logger.info(f"\n{other_id} liked, you haven't seen:")
        for tid in match.they_liked_you_havent[:10]:
            logger.info(f"  {titles[tid].label if tid in titles else tid}")


def cmd_watchlist(args: argparse.Namespace) -> None:
    """List titles marked unwatched."""
    service = _service()
    user_id = _validate_user_id(args.user_id)
    titles = service.watchlist(user_id)
    if not titles:
        logger.info(f"Watchlist for {user_id} is empty.")
        return
    logger.info(f"\nWatchlist for {user_id} ({len(titles)}):")
    for title in titles:
        genres = ", ".join(title.genres)
        logger.info(f"  {title.label}" + (f" ({genres})" if genres else ""))


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database or per-user statistics."""
    init_db()
    if args.user_id:
        service = _service()
        stats = service.user_stats(_validate_user_id(args.user_id))
        logger.info(f"\nStats for {stats.user_id}:")
        logger.info(f"  Actions logged: {stats.total_actions}")
        logger.info(f"  Likes: {stats.likes}  Passes: {stats.passes}  Unwatched: {stats.unwatched}")
        logger.info(f"  Seen titles: {stats.seen}")
        if stats.top_genres:
            logger.info(f"  Top genres: {', '.join(stats.top_genres)}")
        if stats.disliked_genres:
            logger.info(f"  Disliked genres: {', '.join(stats.disliked_genres)}")
        return

    stats = get_action_stats()
    logger.info(f"\nDatabase Statistics:")
    logger.info(f"  Users: {stats['users']}")
    logger.info(f"  Titles: {stats['titles']}")
    logger.info(f"  Actions: {stats['actions']} ({stats['likes']} likes, {stats['passes']} passes, "
                f"{stats['unwatched']} unwatched)")
    meta = get_item_similarity_meta()
    if meta:
        logger.info(f"  Item similarity: {meta['pair_count']} pairs (v{meta['version']}, "
                    f"rebuilt {meta['rebuilt_at']})")
    else:
        logger.info("  Item similarity: not built yet (run rebuild-similarities)")


def cmd_rebuild_similarities(args: argparse.Namespace) -> None:
    """Rebuild the item similarity table."""
    service = _service()
    pairs = service.rebuild_item_similarities()
    logger.info(f"Item similarity table rebuilt: {pairs} pairs")


def cmd_rebuild_daemon(args: argparse.Namespace) -> None:
    """Rebuild the item similarity table on a fixed interval until interrupted."""
    service = _service()

    def notify(pairs: int) -> None:
        send_notification(f"swipr-rec: item similarity rebuilt ({pairs} pairs)")

    scheduler = SimilarityRebuildScheduler(service, interval=args.interval, on_rebuild=notify)
    scheduler.start()
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
    finally:
        scheduler.stop(timeout=5)


def cmd_delete_user(args: argparse.Namespace) -> None:
    """Remove all data for a user."""
    user_id = _validate_user_id(args.user_id)
    if not args.yes:
        logger.error(f"Refusing to delete {user_id} without --yes")
        return
    deleted = _service().delete_user(user_id)
    logger.info(f"Deleted {user_id} ({deleted} actions)")


def main():
    parser = argparse.ArgumentParser(description="Swipe-based hybrid movie recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    catalog_parser = subparsers.add_parser("import-catalog", help="Import catalog titles from JSON")
    catalog_parser.add_argument("file", help="JSON list of titles (or {'titles': [...]})")
    catalog_parser.set_defaults(func=cmd_import_catalog)

    actions_parser = subparsers.add_parser("import-actions", help="Import swipe history from JSON")
    actions_parser.add_argument("file", help="JSON list of actions (or {'actions': [...]})")
    actions_parser.add_argument("--no-rebuild", action="store_true",
                                help="Skip the item similarity rebuild after import")
    actions_parser.set_defaults(func=cmd_import_actions)

    swipe_parser = subparsers.add_parser("swipe", help="Record a swipe")
    swipe_parser.add_argument("user_id", help="User id")
    swipe_parser.add_argument("title_id", type=int, help="Catalog title id")
    swipe_parser.add_argument("kind", choices=["like", "pass", "unwatched"], help="Swipe kind")
    swipe_parser.add_argument("--genres", nargs="+", help="Override genres (default: from catalog)")
    swipe_parser.add_argument("--language", help="Override original language (default: from catalog)")
    swipe_parser.add_argument("--director", help="Override director (default: from catalog)")
    swipe_parser.set_defaults(func=cmd_swipe)

    undo_parser = subparsers.add_parser("undo", help="Undo the latest swipe on a title")
    undo_parser.add_argument("user_id", help="User id")
    undo_parser.add_argument("title_id", type=int, help="Catalog title id")
    undo_parser.set_defaults(func=cmd_undo)

    prefs_parser = subparsers.add_parser("prefs", help="Set or show declared preferences")
    prefs_parser.add_argument("user_id", help="User id")
    prefs_parser.add_argument("--genres", nargs="*", help="Declared genres")
    prefs_parser.add_argument("--languages", nargs="*", help="Declared ISO 639-1 language codes")
    prefs_parser.set_defaults(func=cmd_prefs)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user_id", help="User id")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Number of recommendations")
    rec_parser.add_argument("--discovery-ratio", type=_ratio, default=DEFAULT_DISCOVERY_RATIO,
                            help="Fraction of slots reserved for discovery picks (0-1)")
    rec_parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    rec_parser.add_argument("--explain", action="store_true", help="Show per-source contributions")
    rec_parser.add_argument("--mark-served", action="store_true",
                            help="Mark returned titles as seen so they are not shown again")
    rec_parser.set_defaults(func=cmd_recommend)

    profile_parser = subparsers.add_parser("profile", help="Show a user's preference model")
    profile_parser.add_argument("user_id", help="User id")
    profile_parser.set_defaults(func=cmd_profile)

    similar_users_parser = subparsers.add_parser("similar-users", help="Find users with similar taste")
    similar_users_parser.add_argument("user_id", help="User id")
    similar_users_parser.add_argument("--limit", type=int, default=10, help="Number of users to show")
    similar_users_parser.set_defaults(func=cmd_similar_users)

    compare_parser = subparsers.add_parser("compare", help="Compare two users' swipe histories")
    compare_parser.add_argument("user_id", help="User id")
    compare_parser.add_argument("other_id", help="Other user id")
    compare_parser.set_defaults(func=cmd_compare)

    watchlist_parser = subparsers.add_parser("watchlist", help="List titles marked unwatched")
    watchlist_parser.add_argument("user_id", help="User id")
    watchlist_parser.set_defaults(func=cmd_watchlist)

    stats_parser = subparsers.add_parser("stats", help="Show database or user statistics")
    stats_parser.add_argument("user_id", nargs="?", help="Show stats for one user")
    stats_parser.set_defaults(func=cmd_stats)

    rebuild_parser = subparsers.add_parser("rebuild-similarities", help="Rebuild the item similarity table")
    rebuild_parser.set_defaults(func=cmd_rebuild_similarities)

    daemon_parser = subparsers.add_parser("rebuild-daemon", help="Rebuild item similarities on a schedule")
    daemon_parser.add_argument("--interval", type=float, default=REBUILD_INTERVAL,
                               help="Seconds between rebuilds")
    daemon_parser.set_defaults(func=cmd_rebuild_daemon)

    delete_parser = subparsers.add_parser("delete-user", help="Delete all data for a user")
    delete_parser.add_argument("user_id", help="User id")
    delete_parser.add_argument("--yes", action="store_true", help="Confirm deletion")
    delete_parser.set_defaults(func=cmd_delete_user)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(message)s' if not args.verbose else '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
