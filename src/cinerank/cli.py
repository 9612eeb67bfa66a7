import argparse
import asyncio
import atexit
import json
import logging
from datetime import datetime
from pathlib import Path

from tqdm import tqdm

from .database import (
    init_db, close_pool, save_films, save_watch_records, load_watch_records,
    load_films, load_exploration_state, load_genre_transitions, list_users,
)
from .config import SOURCE_SEED_LIMIT, DEFAULT_MAX_CONCURRENT, SOURCE_TIMEOUT, REPLAY_LOOKBACK_DAYS
from .models import Candidate, FilmMetadata, WatchRecord, Feedback, Polarity, Recommendation
from .profile import format_profile_report
from .engine import recommend, record_feedback, get_profile
from .exploration import eligible_transitions, last_primary_genre
from .replay import ReplayParams, ReplayReport, replay_user
from .sources import load_source_config, gather_candidates
from .utils import parse_timestamp_naive

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)

IMPORT_CHUNK_SIZE = 500


def _validate_user(user_id: str) -> str:
    user_id = (user_id or "").strip()
    if not user_id or len(user_id) > 64:
        raise ValueError(f"Invalid user id: {user_id!r}")
    return user_id


def _parse_weights(weights: list[str] | None) -> dict[str, float]:
    """
    Parse CLI weight arguments in the form source=weight into a dict.
    Invalid entries are ignored with a warning.
    """
    if not weights:
        return {}

    parsed: dict[str, float] = {}
    for entry in weights:
        if "=" not in entry:
            logger.warning(f"Ignoring weight '{entry}' (expected source=weight)")
            continue
        source, value = entry.split("=", 1)
        try:
            parsed[source.strip()] = float(value)
        except ValueError:
            logger.warning(f"Ignoring weight '{entry}' (invalid number)")
    return parsed


def _parse_record(row: dict) -> WatchRecord:
    watched_at = row.get("watched_at")
    return WatchRecord(
        item_id=int(row["item_id"]),
        rating=row.get("rating"),
        liked=bool(row.get("liked", False)),
        watched_at=parse_timestamp_naive(watched_at) if watched_at else None,
        rewatch_count=int(row.get("rewatch_count") or 0),
        title=row.get("title") or "",
    )


def load_pool(path: Path) -> list[Candidate]:
    """
    Read a candidate pool file.

    Format: ``[{"item_id": 603, "scores": {"tmdb": 0.8}, "metadata": {...}}]``;
    metadata is optional and falls back to the films table.
    """
    rows = json.loads(Path(path).read_text())
    pool = []
    for row in rows:
        meta = row.get("metadata")
        pool.append(Candidate(
            item_id=int(row.get("item_id", row.get("id"))),
            source_scores={k: float(v) for k, v in (row.get("scores") or {}).items()},
            metadata=FilmMetadata.from_dict(meta) if meta else None,
        ))
    return pool


def _output_recommendations(recs: list[Recommendation], args: argparse.Namespace, user_id: str) -> None:
    """Format and log recommendations in the requested format."""
    output_format = getattr(args, 'format', 'text')

    if output_format == 'json':
        logger.info(json.dumps([r.to_dict() for r in recs], indent=2))

    elif output_format == 'csv':
        logger.info("Rank,ItemId,Title,Score,Consensus,Exploratory,Reasons")
        for r in recs:
            reasons = "; ".join(r.reasons).replace('"', '""')
            title = r.title.replace('"', '""')
            logger.info(
                f'{r.diversity_rank},{r.item_id},"{title}",{r.score:.3f},'
                f'{r.consensus_level},{int(r.exploratory)},"{reasons}"'
            )

    elif output_format == 'markdown':
        logger.info(f"\n# Top {len(recs)} recommendations for {user_id}\n")
        for r in recs:
            tag = " *(exploratory)*" if r.exploratory else ""
            logger.info(f"## {r.diversity_rank}. {r.title or r.item_id}{tag}")
            logger.info(f"**Score**: {r.score:.3f} ({r.consensus_level} consensus)  ")
            logger.info(f"**Why**: {', '.join(r.reasons)}\n")

    else:  # text format
        if not recs:
            logger.info(f"No recommendations for {user_id}")
            return
        logger.info(f"\nTop {len(recs)} recommendations for {user_id}:")
        for r in recs:
            tag = " [explore]" if r.exploratory else ""
            logger.info(f"{r.diversity_rank}. {r.title or r.item_id} - Score: {r.score:.3f} ({r.consensus_level}){tag}")
            logger.info(f"   Why: {', '.join(r.reasons)}")


def cmd_import(args: argparse.Namespace) -> None:
    """Import films and watch records from a JSON export."""
    with open(args.file, 'r') as f:
        data = json.load(f)

    init_db()

    films = data.get('films', [])
    parsed_films = []
    for payload in films:
        try:
            parsed_films.append(FilmMetadata.from_dict(payload))
        except ValueError as e:
            logger.warning(f"Skipping invalid film entry: {e}")
    for i in tqdm(range(0, len(parsed_films), IMPORT_CHUNK_SIZE), desc="Films", disable=not parsed_films):
        save_films(parsed_films[i:i + IMPORT_CHUNK_SIZE])
    logger.info(f"Imported {len(parsed_films)} films")

    by_user: dict[str, list[WatchRecord]] = {}
    for row in data.get('watch_records', []):
        by_user.setdefault(row['user_id'], []).append(_parse_record(row))
    for user_id, records in tqdm(by_user.items(), desc="Users", disable=not by_user):
        save_watch_records(user_id, records)
    logger.info(f"Imported {sum(len(r) for r in by_user.values())} watch records for {len(by_user)} users")


def cmd_profile(args: argparse.Namespace) -> None:
    """Show a user's taste profile."""
    user_id = _validate_user(args.user)
    init_db()

    history = load_watch_records(user_id)
    if not history:
        logger.error(f"No watch history for '{user_id}'. Run: cinerank import FILE")
        return

    metadata = load_films([r.item_id for r in history])
    profile = get_profile(user_id, history, metadata, use_cache=not args.rebuild)

    if args.format == 'json':
        logger.info(json.dumps(profile.to_dict(), indent=2))
        return

    logger.info(f"\nProfile for {user_id}")
    for line in format_profile_report(profile):
        logger.info(f"  {line}" if line else "")


def cmd_fetch_candidates(args: argparse.Namespace) -> None:
    """Query HTTP scoring sources seeded with the user's favourite films."""
    user_id = _validate_user(args.user)
    init_db()

    history = load_watch_records(user_id)
    favourites = sorted(
        (r for r in history if r.liked or (r.rating or 0) >= 4.0),
        key=lambda r: (-(r.rating or 0), -int(r.liked), r.item_id),
    )
    seeds = [r.item_id for r in favourites[:args.seeds]]
    if not seeds:
        logger.error(f"No liked or highly rated films for '{user_id}' to seed sources with")
        return

    sources = load_source_config(Path(args.sources_file))
    candidates, unavailable = asyncio.run(
        gather_candidates(sources, seeds, timeout=args.timeout, max_concurrent=args.max_concurrent)
    )
    if unavailable:
        logger.warning(f"Unavailable sources: {', '.join(unavailable)}")

    out = [{"item_id": c.item_id, "scores": c.source_scores} for c in candidates]
    Path(args.out).write_text(json.dumps(out, indent=2))
    logger.info(f"Wrote {len(out)} candidates to {args.out}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Rank a candidate pool for a user."""
    user_id = _validate_user(args.user)
    init_db()

    overrides = {}
    if args.mmr_lambda is not None:
        overrides["mmr_lambda"] = args.mmr_lambda
    weights = _parse_weights(args.weight)
    if weights:
        overrides["source_weights"] = weights
    if args.no_log:
        overrides["log_exposures"] = False

    pool = load_pool(Path(args.pool))
    recs = recommend(user_id, pool, n=args.limit, overrides=overrides)
    _output_recommendations(recs, args, user_id)


def cmd_rate(args: argparse.Namespace) -> None:
    """Record a rating and update the learning state."""
    user_id = _validate_user(args.user)
    if not 0.5 <= args.rating <= 5.0:
        logger.error("Rating must be between 0.5 and 5.0")
        return

    record = WatchRecord(item_id=args.item, rating=args.rating, liked=args.liked, watched_at=datetime.now())
    events = record_feedback(user_id, ratings=[record])
    _log_events(events)


def cmd_feedback(args: argparse.Namespace) -> None:
    """Record thumbs up/down on a shown suggestion."""
    user_id = _validate_user(args.user)
    polarity = Polarity.POSITIVE if args.positive else Polarity.NEGATIVE
    events = record_feedback(user_id, feedback=[Feedback(args.item, polarity, datetime.now())])
    _log_events(events)


def _log_events(events) -> None:
    if not events:
        logger.info("Recorded; no learning state changed")
    for event in events:
        logger.info(f"{event.kind}: {json.dumps(event.payload, sort_keys=True)}")


def cmd_exploration(args: argparse.Namespace) -> None:
    """Show exploration state and transitions eligible to influence ranking."""
    user_id = _validate_user(args.user)
    init_db()

    state = load_exploration_state(user_id)
    transitions = load_genre_transitions(user_id)
    history = load_watch_records(user_id)
    metadata = load_films([r.item_id for r in history])
    last_genre = last_primary_genre(history, metadata)

    logger.info(f"\nExploration state for {user_id}")
    logger.info(f"  Rate: {state.exploration_rate:.2%}")
    logger.info(f"  Exploratory films rated: {state.exploratory_items_rated} (avg {state.exploratory_avg_rating:.2f})")
    logger.info(f"  Learned transitions: {len(transitions)}")
    logger.info(f"  Last genre: {last_genre or 'unknown'}")

    eligible = eligible_transitions(transitions, last_genre)
    if eligible:
        logger.info("  Eligible next genres:")
        for t in eligible:
            logger.info(f"    {t.from_genre} -> {t.to_genre}: {t.success_rate:.0%} ({t.total_count} observations)")


def _log_replay(report: ReplayReport) -> None:
    s, w = report.simulated, report.window
    logger.info(f"\nReplay for {report.user_id}")
    logger.info(f"  Original ({w.total} exposures, {w.with_feedback} with feedback): "
                f"acceptance {w.acceptance_rate:.1%}, avg score {w.avg_score:.3f}, "
                f"high consensus {w.high_consensus_fraction:.0%}")
    logger.info(f"  Simulated (top {s.total}): acceptance {s.acceptance_rate:.1%}, avg score {s.avg_score:.3f}, "
                f"high consensus {s.high_consensus_fraction:.0%}")
    logger.info(f"  Delta: {report.acceptance_delta:+.1%}")


def cmd_replay(args: argparse.Namespace) -> None:
    """Preview how alternate parameters would have changed recent outcomes."""
    init_db()
    weights = _parse_weights(args.weight)
    params = ReplayParams(mmr_lambda=args.mmr_lambda, source_weights=weights or None)
    params.validate()

    if args.all_users:
        users = list_users()
    elif args.user:
        users = [_validate_user(args.user)]
    else:
        logger.error("Specify a user or --all-users")
        return

    reports = [
        replay_user(u, params, lookback_days=args.lookback_days)
        for u in tqdm(users, desc="Replay", disable=len(users) < 2)
    ]

    if args.format == 'json':
        logger.info(json.dumps([r.to_dict() for r in reports], indent=2))
        return
    for report in reports:
        _log_replay(report)


def main():
    parser = argparse.ArgumentParser(description="Cinerank personalization engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import films and watch records from JSON")
    import_parser.add_argument("file", help="JSON export with 'films' and 'watch_records'")
    import_parser.set_defaults(func=cmd_import)

    profile_parser = subparsers.add_parser("profile", help="Show taste profile")
    profile_parser.add_argument("user", help="User id")
    profile_parser.add_argument("--rebuild", action="store_true", help="Ignore the cached profile")
    profile_parser.add_argument("--format", choices=["text", "json"], default="text")
    profile_parser.set_defaults(func=cmd_profile)

    fetch_parser = subparsers.add_parser("fetch-candidates", help="Query scoring sources for a candidate pool")
    fetch_parser.add_argument("user", help="User id")
    fetch_parser.add_argument("--sources-file", required=True, help="JSON list of {name, url} sources")
    fetch_parser.add_argument("--out", required=True, help="Where to write the candidate pool")
    fetch_parser.add_argument("--seeds", type=int, default=SOURCE_SEED_LIMIT, help="Favourite films used as seeds")
    fetch_parser.add_argument("--timeout", type=float, default=SOURCE_TIMEOUT, help="Per-source timeout (seconds)")
    fetch_parser.add_argument("--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT)
    fetch_parser.set_defaults(func=cmd_fetch_candidates)

    rec_parser = subparsers.add_parser("recommend", help="Rank a candidate pool")
    rec_parser.add_argument("user", help="User id")
    rec_parser.add_argument("--pool", required=True, help="Candidate pool JSON file")
    rec_parser.add_argument("--limit", type=int, default=20, help="Number of recommendations")
    rec_parser.add_argument("--lambda", dest="mmr_lambda", type=float, help="Diversity weight in [0, 1]")
    rec_parser.add_argument("--weight", action="append", help="Source weight override, e.g. tmdb=1.2")
    rec_parser.add_argument("--no-log", action="store_true", help="Do not record exposures")
    rec_parser.add_argument("--format", choices=["text", "json", "markdown", "csv"], default="text")
    rec_parser.set_defaults(func=cmd_recommend)

    rate_parser = subparsers.add_parser("rate", help="Record a rating")
    rate_parser.add_argument("user", help="User id")
    rate_parser.add_argument("item", type=int, help="Item id")
    rate_parser.add_argument("rating", type=float, help="Rating 0.5-5.0")
    rate_parser.add_argument("--liked", action="store_true")
    rate_parser.set_defaults(func=cmd_rate)

    fb_parser = subparsers.add_parser("feedback", help="Thumbs up/down on a suggestion")
    fb_parser.add_argument("user", help="User id")
    fb_parser.add_argument("item", type=int, help="Item id")
    polarity = fb_parser.add_mutually_exclusive_group(required=True)
    polarity.add_argument("--positive", action="store_true")
    polarity.add_argument("--negative", action="store_true")
    fb_parser.set_defaults(func=cmd_feedback)

    explore_parser = subparsers.add_parser("exploration", help="Show exploration state")
    explore_parser.add_argument("user", help="User id")
    explore_parser.set_defaults(func=cmd_exploration)

    replay_parser = subparsers.add_parser("replay", help="Counterfactual replay of recent exposures")
    replay_parser.add_argument("user", nargs="?", help="User id")
    replay_parser.add_argument("--all-users", action="store_true")
    replay_parser.add_argument("--lambda", dest="mmr_lambda", type=float, help="Proposed diversity weight")
    replay_parser.add_argument("--weight", action="append", help="Proposed source weight, e.g. trakt=1.0")
    replay_parser.add_argument("--lookback-days", type=int, default=REPLAY_LOOKBACK_DAYS)
    replay_parser.add_argument("--format", choices=["text", "json"], default="text")
    replay_parser.set_defaults(func=cmd_replay)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
