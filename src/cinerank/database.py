import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime

from .config import DB_PATH, PROFILE_SCHEMA_VERSION, PROFILE_CACHE_MAX_AGE_DAYS
from .models import (
    WatchRecord, FilmMetadata, Feedback, Polarity, ExplorationState,
    GenreTransition, SuggestionExposure,
)
from .utils import parse_timestamp_naive

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Per-thread SQLite connections with health checks.

    SQLite connections cannot be shared across threads safely, so each thread
    gets its own; nested ``get_db`` contexts on one thread share a transaction.
    """

    def __init__(self, db_path, health_check_interval: int = 300):
        self._db_path = db_path
        self._health_check_interval = health_check_interval
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._healthy(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    conn = None

            if conn is None:
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")
            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = max(0, self._transaction_depth.get(thread_id, 1) - 1)

    def close_all(self):
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Only the outermost context commits or rolls back, so a caller can group
    several writes into one atomic unit by nesting.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS films (
                item_id INTEGER PRIMARY KEY,
                title TEXT,
                year INTEGER,
                genres TEXT,        -- JSON list, NULL when unknown
                keywords TEXT,      -- JSON list, NULL when unknown
                cast TEXT,          -- JSON list, NULL when unknown
                runtime INTEGER,
                vote_count INTEGER,
                vote_average REAL
            );

            CREATE TABLE IF NOT EXISTS watch_records (
                user_id TEXT,
                item_id INTEGER,
                rating REAL,
                liked INTEGER DEFAULT 0,
                watched_at TEXT,
                rewatch_count INTEGER DEFAULT 0,
                title TEXT,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS feedback (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                item_id INTEGER NOT NULL,
                polarity TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS exploration_state (
                user_id TEXT PRIMARY KEY,
                exploration_rate REAL NOT NULL,
                exploratory_items_rated INTEGER NOT NULL,
                exploratory_avg_rating REAL NOT NULL,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS genre_transitions (
                user_id TEXT NOT NULL,
                from_genre TEXT NOT NULL,
                to_genre TEXT NOT NULL,
                success_count INTEGER NOT NULL,
                total_count INTEGER NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (user_id, from_genre, to_genre)
            );

            CREATE TABLE IF NOT EXISTS suggestion_exposures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                item_id INTEGER NOT NULL,
                exposed_at TEXT NOT NULL,
                category TEXT,
                base_score REAL NOT NULL,
                consensus_level TEXT NOT NULL,
                sources TEXT,          -- JSON list
                reasons TEXT,          -- JSON list
                mmr_lambda REAL NOT NULL,
                diversity_rank INTEGER NOT NULL,
                source_weights TEXT    -- JSON object, weights in effect at serve time
            );

            CREATE TABLE IF NOT EXISTS taste_profiles (
                user_id TEXT PRIMARY KEY,
                profile_data TEXT,
                updated_at TEXT,
                schema_version INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_watch_user ON watch_records(user_id);
            CREATE INDEX IF NOT EXISTS idx_feedback_user ON feedback(user_id, item_id);
            CREATE INDEX IF NOT EXISTS idx_exposure_user_time ON suggestion_exposures(user_id, exposed_at);
        """)


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if val is None or val == "":
        return [] if default is None else default
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return [] if default is None else default


def _dump_optional(values: list | None) -> str | None:
    return None if values is None else json.dumps(values)


def _load_optional(val) -> list | None:
    return None if val is None else load_json(val)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_timestamp_naive(value)
    except ValueError:
        logger.warning(f"Unparseable timestamp '{value}'")
        return None


# Films (metadata cache fed by the resolver collaborator)

def save_films(films: list[FilmMetadata]) -> None:
    """Upsert metadata and drop cached profiles of users who watched these films."""
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO films
            (item_id, title, year, genres, keywords, cast, runtime, vote_count, vote_average)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (f.item_id, f.title, f.year, _dump_optional(f.genres), _dump_optional(f.keywords),
             _dump_optional(f.cast), f.runtime, f.vote_count, f.vote_average)
            for f in films
        ])
        conn.executemany("""
            DELETE FROM taste_profiles
            WHERE user_id IN (SELECT user_id FROM watch_records WHERE item_id = ?)
        """, [(f.item_id,) for f in films])


def load_films(item_ids=None) -> dict[int, FilmMetadata]:
    """Load cached metadata, optionally restricted to ``item_ids``."""
    with get_db(read_only=True) as conn:
        if item_ids is None:
            rows = conn.execute("SELECT * FROM films").fetchall()
        else:
            ids = list(set(item_ids))
            rows = []
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                placeholders = ",".join("?" * len(chunk))
                rows.extend(conn.execute(f"SELECT * FROM films WHERE item_id IN ({placeholders})", chunk).fetchall())

    return {
        row["item_id"]: FilmMetadata(
            item_id=row["item_id"],
            title=row["title"] or "",
            year=row["year"],
            genres=_load_optional(row["genres"]),
            keywords=_load_optional(row["keywords"]),
            cast=_load_optional(row["cast"]),
            runtime=row["runtime"],
            vote_count=row["vote_count"],
            vote_average=row["vote_average"],
        )
        for row in rows
    }


# Watch history

def save_watch_records(user_id: str, records: list[WatchRecord]) -> None:
    """Upsert watch records; an existing record keeps the larger rewatch count."""
    with get_db() as conn:
        for r in records:
            existing = conn.execute(
                "SELECT rewatch_count FROM watch_records WHERE user_id = ? AND item_id = ?",
                (user_id, r.item_id),
            ).fetchone()
            rewatch = max(r.rewatch_count, existing["rewatch_count"] if existing else 0)
            conn.execute("""
                INSERT OR REPLACE INTO watch_records
                (user_id, item_id, rating, liked, watched_at, rewatch_count, title)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (user_id, r.item_id, r.rating, int(r.liked), _ts(r.watched_at), rewatch, r.title))
        if records:
            conn.execute("DELETE FROM taste_profiles WHERE user_id = ?", (user_id,))


def load_watch_records(user_id: str) -> list[WatchRecord]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT item_id, rating, liked, watched_at, rewatch_count, title
            FROM watch_records WHERE user_id = ?
            ORDER BY watched_at, item_id
        """, (user_id,)).fetchall()
    return [
        WatchRecord(
            item_id=row["item_id"],
            rating=row["rating"],
            liked=bool(row["liked"]),
            watched_at=_parse_ts(row["watched_at"]),
            rewatch_count=row["rewatch_count"] or 0,
            title=row["title"] or "",
        )
        for row in rows
    ]


def list_users() -> list[str]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT user_id FROM watch_records
            UNION SELECT user_id FROM suggestion_exposures
            ORDER BY user_id
        """).fetchall()
    return [row[0] for row in rows]


# Feedback

def save_feedback(user_id: str, feedback: list[Feedback]) -> None:
    with get_db() as conn:
        conn.executemany(
            "INSERT INTO feedback (user_id, item_id, polarity, created_at) VALUES (?, ?, ?, ?)",
            [
                (user_id, fb.item_id, fb.polarity.value, _ts(fb.created_at or datetime.now()))
                for fb in feedback
            ],
        )


def load_feedback(user_id: str) -> list[Feedback]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT item_id, polarity, created_at FROM feedback WHERE user_id = ? ORDER BY created_at, id",
            (user_id,),
        ).fetchall()
    return [
        Feedback(item_id=row["item_id"], polarity=Polarity(row["polarity"]), created_at=_parse_ts(row["created_at"]))
        for row in rows
    ]


# Learning state

def load_exploration_state(user_id: str) -> ExplorationState:
    """Load persisted exploration state; out-of-bounds values are clamped, never fatal."""
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM exploration_state WHERE user_id = ?", (user_id,)
        ).fetchone()
    if row is None:
        return ExplorationState(user_id=user_id)

    state = ExplorationState(
        user_id=user_id,
        exploration_rate=row["exploration_rate"],
        exploratory_items_rated=row["exploratory_items_rated"],
        exploratory_avg_rating=row["exploratory_avg_rating"],
        updated_at=_parse_ts(row["updated_at"]),
    )
    return state.clamped()


def load_genre_transitions(user_id: str) -> dict[tuple[str, str], GenreTransition]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT from_genre, to_genre, success_count, total_count FROM genre_transitions WHERE user_id = ?",
            (user_id,),
        ).fetchall()
    return {
        (row["from_genre"], row["to_genre"]): GenreTransition(
            row["from_genre"], row["to_genre"], row["success_count"], row["total_count"]
        )
        for row in rows
    }


def save_learning_state(
    user_id: str,
    state: ExplorationState,
    transitions: list[GenreTransition],
) -> None:
    """
    Write the full exploration state and touched transitions in one transaction.

    Whole rows are replaced, so concurrent writers resolve last-write-wins
    without leaving a rate updated without its matching count.
    """
    now = datetime.now().isoformat()
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO exploration_state
            (user_id, exploration_rate, exploratory_items_rated, exploratory_avg_rating, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, state.exploration_rate, state.exploratory_items_rated,
              state.exploratory_avg_rating, _ts(state.updated_at) or now))
        conn.executemany("""
            INSERT OR REPLACE INTO genre_transitions
            (user_id, from_genre, to_genre, success_count, total_count, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [
            (user_id, t.from_genre, t.to_genre, t.success_count, t.total_count, now)
            for t in transitions
        ])


# Exposures

def log_exposures(exposures: list[SuggestionExposure]) -> None:
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO suggestion_exposures
            (user_id, item_id, exposed_at, category, base_score, consensus_level,
             sources, reasons, mmr_lambda, diversity_rank, source_weights)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (e.user_id, e.item_id, e.exposed_at.isoformat(), e.category, e.base_score,
             e.consensus_level, json.dumps(e.sources), json.dumps(e.reasons),
             e.mmr_lambda, e.diversity_rank, json.dumps(e.source_weights))
            for e in exposures
        ])


def load_exposures(user_id: str, since: datetime | None = None) -> list[SuggestionExposure]:
    query = "SELECT * FROM suggestion_exposures WHERE user_id = ?"
    params: list = [user_id]
    if since is not None:
        query += " AND exposed_at >= ?"
        params.append(since.isoformat())
    query += " ORDER BY exposed_at, id"

    with get_db(read_only=True) as conn:
        rows = conn.execute(query, params).fetchall()
    return [
        SuggestionExposure(
            user_id=row["user_id"],
            item_id=row["item_id"],
            exposed_at=parse_timestamp_naive(row["exposed_at"]),
            base_score=row["base_score"],
            consensus_level=row["consensus_level"],
            sources=load_json(row["sources"]),
            reasons=load_json(row["reasons"]),
            mmr_lambda=row["mmr_lambda"],
            diversity_rank=row["diversity_rank"],
            category=row["category"] or "core",
            source_weights=load_json(row["source_weights"], default={}),
        )
        for row in rows
    ]


# Profile cache

def load_cached_profile(user_id: str, max_age_days: int = PROFILE_CACHE_MAX_AGE_DAYS) -> dict | None:
    """Return cached profile data if fresh and on the current schema version."""
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT profile_data, updated_at, schema_version FROM taste_profiles WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    if row is None or row["schema_version"] != PROFILE_SCHEMA_VERSION:
        return None

    updated = _parse_ts(row["updated_at"])
    if updated is None or (datetime.now() - updated).days > max_age_days:
        return None

    data = load_json(row["profile_data"], default={})
    return data or None


def save_cached_profile(user_id: str, profile_data: dict) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO taste_profiles (user_id, profile_data, updated_at, schema_version)
            VALUES (?, ?, ?, ?)
        """, (user_id, json.dumps(profile_data), datetime.now().isoformat(), PROFILE_SCHEMA_VERSION))


def invalidate_cached_profile(user_id: str) -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM taste_profiles WHERE user_id = ?", (user_id,))
