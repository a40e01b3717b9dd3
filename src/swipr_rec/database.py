import sqlite3
import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from .config import DB_PATH, PREFERENCE_SCHEMA_VERSION

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Action timestamps may arrive with or without an offset; stored values
    are always naive so comparisons never mix naive and aware datetimes.
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    - One connection per thread (SQLite threading requirement)
    - Periodic health checks via SELECT 1
    - Cleanup of connections owned by threads that have exited
    - Transaction nesting depth per thread
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")

        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _maybe_cleanup(self, force: bool = False):
        """Close connections whose owning thread has exited."""
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections.keys()) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    try:
                        conn.close()
                    except sqlite3.Error:
                        pass
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._maybe_cleanup(force=True)
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )

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
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                title_id INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('like', 'pass', 'unwatched')),
                genres TEXT,        -- JSON list
                language TEXT,
                director TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_actions_user ON actions(user_id, id);
            CREATE INDEX IF NOT EXISTS idx_actions_title_kind ON actions(title_id, kind);

            CREATE TABLE IF NOT EXISTS preference_models (
                user_id TEXT PRIMARY KEY,
                model_data TEXT NOT NULL,
                model_version INTEGER NOT NULL,
                schema_version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS item_similarities (
                title_a INTEGER NOT NULL,
                title_b INTEGER NOT NULL,
                score REAL NOT NULL,
                common_likers INTEGER NOT NULL,
                total_interactions INTEGER NOT NULL,
                PRIMARY KEY (title_a, title_b),
                CHECK (title_a < title_b)
            );
            CREATE INDEX IF NOT EXISTS idx_item_sim_b ON item_similarities(title_b);

            CREATE TABLE IF NOT EXISTS item_similarity_meta (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL,
                pair_count INTEGER NOT NULL,
                rebuilt_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS recommendation_cache (
                user_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,      -- JSON list of recommendations
                params TEXT NOT NULL,       -- JSON request parameters
                scoring_version TEXT NOT NULL,
                computed_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS seen_titles (
                user_id TEXT NOT NULL,
                title_id INTEGER NOT NULL,
                source TEXT,                -- 'swiped' or 'served'
                seen_at TEXT NOT NULL,
                PRIMARY KEY (user_id, title_id)
            );

            CREATE TABLE IF NOT EXISTS user_preferences (
                user_id TEXT PRIMARY KEY,
                genres TEXT,                -- JSON list
                languages TEXT,             -- JSON list
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS titles (
                id INTEGER PRIMARY KEY,
                title TEXT,
                genres TEXT,                -- JSON list
                original_language TEXT,
                vote_average REAL,
                vote_count INTEGER,
                director TEXT,
                popularity REAL,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_titles_votes ON titles(vote_count DESC, vote_average DESC);
        """)


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
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

    Args:
        read_only: If True, skip commit on exit (optimization for read operations)

    Handles nested calls correctly:
    - Only the outermost context commits/rollbacks
    - Inner contexts are no-ops for transaction control
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


def load_json(val):
    """Safely load a JSON list from db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{val[:50]}...': {e}")
        return []


# --- Action log -------------------------------------------------------------

def insert_action(
    user_id: str,
    title_id: int,
    kind: str,
    genres: list[str],
    language: str | None,
    director: str | None,
    created_at: str,
) -> int:
    """Append an action to the log. Returns its sequence number."""
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO actions (user_id, title_id, kind, genres, language, director, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (user_id, title_id, kind, json.dumps(genres), language, director, created_at))
        return cursor.lastrowid


def insert_actions_batch(rows: list[dict]) -> int:
    """Append many actions in one transaction (bulk import)."""
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO actions (user_id, title_id, kind, genres, language, director, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [(
            r['user_id'], r['title_id'], r['kind'], json.dumps(r.get('genres') or []),
            r.get('language'), r.get('director'), r['created_at'],
        ) for r in rows])
    return len(rows)


def _action_row(row) -> dict:
    data = dict(row)
    data['genres'] = load_json(data.get('genres'))
    return data


def load_user_actions(user_id: str, after: int = 0) -> list[dict]:
    """Load a user's actions in arrival order, optionally only those logged after a sequence."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT id, user_id, title_id, kind, genres, language, director, created_at
            FROM actions
            WHERE user_id = ? AND id > ?
            ORDER BY id
        """, (user_id, after)).fetchall()
    return [_action_row(r) for r in rows]


def load_actions_batch(user_ids: list[str]) -> dict[str, list[dict]]:
    """
    Load actions for multiple users in a single query.

    Much more efficient than N separate queries when building neighbour models.
    """
    if not user_ids:
        return {}

    with get_db(read_only=True) as conn:
        placeholders = ','.join('?' * len(user_ids))
        rows = conn.execute(f"""
            SELECT id, user_id, title_id, kind, genres, language, director, created_at
            FROM actions
            WHERE user_id IN ({placeholders})
            ORDER BY id
        """, user_ids).fetchall()

    result = defaultdict(list)
    for row in rows:
        action = _action_row(row)
        result[action['user_id']].append(action)
    return dict(result)


def load_all_actions() -> list[dict]:
    """Load the whole action log in arrival order (batch similarity rebuild)."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT id, user_id, title_id, kind, genres, language, director, created_at
            FROM actions
            ORDER BY id
        """).fetchall()
    return [_action_row(r) for r in rows]


def delete_latest_action(user_id: str, title_id: int) -> dict | None:
    """Remove the most recent action for a (user, title) pair. Returns the removed row."""
    with get_db() as conn:
        row = conn.execute("""
            SELECT id, user_id, title_id, kind, genres, language, director, created_at
            FROM actions
            WHERE user_id = ? AND title_id = ?
            ORDER BY id DESC
            LIMIT 1
        """, (user_id, title_id)).fetchone()
        if not row:
            return None
        conn.execute("DELETE FROM actions WHERE id = ?", (row['id'],))
        return _action_row(row)


def find_users_who_liked(
    title_ids: list[int],
    exclude_user: str | None = None,
    limit: int = 200,
) -> list[tuple[str, int]]:
    """
    Find users whose current action on any of the given titles is a like.

    Returns (user_id, shared_like_count) ordered by shared likes descending,
    then user id, truncated to ``limit``.
    """
    if not title_ids:
        return []

    with get_db(read_only=True) as conn:
        placeholders = ','.join('?' * len(title_ids))
        rows = conn.execute(f"""
            SELECT a.user_id, COUNT(*) AS shared
            FROM actions a
            JOIN (
                SELECT MAX(id) AS id FROM actions
                WHERE title_id IN ({placeholders})
                GROUP BY user_id, title_id
            ) latest ON latest.id = a.id
            WHERE a.kind = 'like' AND a.user_id != ?
            GROUP BY a.user_id
            ORDER BY shared DESC, a.user_id
            LIMIT ?
        """, [*title_ids, exclude_user or "", limit]).fetchall()
    return [(r['user_id'], r['shared']) for r in rows]


def get_action_stats() -> dict:
    with get_db(read_only=True) as conn:
        users = conn.execute("SELECT COUNT(DISTINCT user_id) FROM actions").fetchone()[0]
        total = conn.execute("SELECT COUNT(*) FROM actions").fetchone()[0]
        by_kind = dict(conn.execute("SELECT kind, COUNT(*) FROM actions GROUP BY kind").fetchall())
        titles = conn.execute("SELECT COUNT(*) FROM titles").fetchone()[0]
        pairs = conn.execute("SELECT COUNT(*) FROM item_similarities").fetchone()[0]
    return {
        'users': users,
        'actions': total,
        'likes': by_kind.get('like', 0),
        'passes': by_kind.get('pass', 0),
        'unwatched': by_kind.get('unwatched', 0),
        'titles': titles,
        'similarity_pairs': pairs,
    }


# --- Preference model snapshots ----------------------------------------------

def save_preference_model(user_id: str, model_data: dict, model_version: int) -> None:
    """Save a preference model snapshot with naive timestamp and schema version."""
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO preference_models
            (user_id, model_data, model_version, schema_version, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, json.dumps(model_data), model_version, PREFERENCE_SCHEMA_VERSION,
              datetime.now().isoformat()))


def load_preference_model(user_id: str) -> dict | None:
    """
    Load a stored preference model snapshot.

    Snapshots written under another schema version are ignored; the caller
    rebuilds the model from the action log instead.
    """
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT model_data, schema_version FROM preference_models WHERE user_id = ?
        """, (user_id,)).fetchone()

    if not row:
        return None
    if row['schema_version'] != PREFERENCE_SCHEMA_VERSION:
        logger.debug(f"Preference snapshot for {user_id} ignored - schema version mismatch "
                     f"({row['schema_version']} != {PREFERENCE_SCHEMA_VERSION})")
        return None
    try:
        return json.loads(row['model_data'])
    except json.JSONDecodeError as e:
        logger.warning(f"Corrupt preference snapshot for {user_id}: {e}")
        return None


# --- Item similarity table ---------------------------------------------------

def replace_item_similarities(rows: list[tuple[int, int, float, int, int]]) -> int:
    """
    Replace the whole similarity table in one transaction and bump its version.

    Rows are (title_a, title_b, score, common_likers, total_interactions) with
    title_a < title_b. Returns the new table version.
    """
    with get_db() as conn:
        conn.execute("DELETE FROM item_similarities")
        conn.executemany("""
            INSERT INTO item_similarities (title_a, title_b, score, common_likers, total_interactions)
            VALUES (?, ?, ?, ?, ?)
        """, rows)
        row = conn.execute("SELECT version FROM item_similarity_meta WHERE id = 1").fetchone()
        version = (row['version'] if row else 0) + 1
        conn.execute("""
            INSERT OR REPLACE INTO item_similarity_meta (id, version, pair_count, rebuilt_at)
            VALUES (1, ?, ?, ?)
        """, (version, len(rows), datetime.now().isoformat()))
    return version


def load_item_similarities() -> tuple[list[tuple[int, int, float, int, int]], int]:
    """Load all similarity rows and the table version (0 if never built)."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT title_a, title_b, score, common_likers, total_interactions
            FROM item_similarities
            ORDER BY title_a, title_b
        """).fetchall()
        meta = conn.execute("SELECT version FROM item_similarity_meta WHERE id = 1").fetchone()
    return [tuple(r) for r in rows], (meta['version'] if meta else 0)


def get_item_similarity_meta() -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT version, pair_count, rebuilt_at FROM item_similarity_meta WHERE id = 1
        """).fetchone()
    return dict(row) if row else None


# --- Recommendation cache ----------------------------------------------------

def load_cache_entry(user_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT user_id, payload, params, scoring_version, computed_at, expires_at
            FROM recommendation_cache
            WHERE user_id = ?
        """, (user_id,)).fetchone()
    if not row:
        return None
    entry = dict(row)
    entry['payload'] = load_json(entry['payload'])
    entry['params'] = json.loads(entry['params']) if entry['params'] else {}
    return entry


def save_cache_entry(
    user_id: str,
    payload: list[dict],
    params: dict,
    scoring_version: str,
    computed_at: str,
    expires_at: str,
) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO recommendation_cache
            (user_id, payload, params, scoring_version, computed_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (user_id, json.dumps(payload), json.dumps(params, sort_keys=True),
              scoring_version, computed_at, expires_at))


def delete_cache_entry(user_id: str) -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM recommendation_cache WHERE user_id = ?", (user_id,))


# --- Seen set ----------------------------------------------------------------

def add_seen_titles(user_id: str, title_ids: list[int], source: str) -> None:
    """Record titles as seen; re-adding an existing title is a no-op."""
    now = datetime.now().isoformat()
    with get_db() as conn:
        conn.executemany("""
            INSERT OR IGNORE INTO seen_titles (user_id, title_id, source, seen_at)
            VALUES (?, ?, ?, ?)
        """, [(user_id, tid, source, now) for tid in title_ids])


def remove_seen_title(user_id: str, title_id: int) -> bool:
    with get_db() as conn:
        cursor = conn.execute("""
            DELETE FROM seen_titles WHERE user_id = ? AND title_id = ?
        """, (user_id, title_id))
        return cursor.rowcount > 0


def load_seen_titles(user_id: str) -> set[int]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT title_id FROM seen_titles WHERE user_id = ?", (user_id,)).fetchall()
    return {r['title_id'] for r in rows}


# --- Declared preferences ----------------------------------------------------

def save_declared_preferences(user_id: str, genres: list[str], languages: list[str]) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_preferences (user_id, genres, languages, updated_at)
            VALUES (?, ?, ?, ?)
        """, (user_id, json.dumps(sorted(genres)), json.dumps(sorted(languages)),
              datetime.now().isoformat()))


def load_declared_preferences(user_ids: list[str]) -> dict[str, dict]:
    """Load declared genre/language preferences for several users."""
    if not user_ids:
        return {}
    with get_db(read_only=True) as conn:
        placeholders = ','.join('?' * len(user_ids))
        rows = conn.execute(f"""
            SELECT user_id, genres, languages FROM user_preferences
            WHERE user_id IN ({placeholders})
        """, user_ids).fetchall()
    return {
        r['user_id']: {'genres': load_json(r['genres']), 'languages': load_json(r['languages'])}
        for r in rows
    }


# --- Titles (local catalog store) --------------------------------------------

def upsert_titles(titles: list[dict]) -> int:
    now = datetime.now().isoformat()
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO titles
            (id, title, genres, original_language, vote_average, vote_count, director, popularity, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [(
            t['id'], t.get('title'), json.dumps(list(t.get('genres') or [])),
            t.get('original_language'), t.get('vote_average'), t.get('vote_count'),
            t.get('director'), t.get('popularity'), now,
        ) for t in titles])
    return len(titles)


def _title_row(row) -> dict:
    data = dict(row)
    data['genres'] = load_json(data.get('genres'))
    data.pop('updated_at', None)
    return data


def load_titles(limit: int | None = None) -> list[dict]:
    """Load catalog titles, most voted first."""
    query = """
        SELECT id, title, genres, original_language, vote_average, vote_count, director, popularity, updated_at
        FROM titles
        ORDER BY vote_count DESC, vote_average DESC, id
    """
    params: tuple = ()
    if limit is not None:
        query += " LIMIT ?"
        params = (limit,)
    with get_db(read_only=True) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_title_row(r) for r in rows]


def load_titles_by_id(title_ids: list[int]) -> dict[int, dict]:
    if not title_ids:
        return {}
    with get_db(read_only=True) as conn:
        placeholders = ','.join('?' * len(title_ids))
        rows = conn.execute(f"""
            SELECT id, title, genres, original_language, vote_average, vote_count, director, popularity, updated_at
            FROM titles WHERE id IN ({placeholders})
        """, list(title_ids)).fetchall()
    return {r['id']: _title_row(r) for r in rows}


# --- Account removal ---------------------------------------------------------

def delete_user(user_id: str) -> int:
    """Remove every row owned by a user. Returns the number of actions deleted."""
    with get_db() as conn:
        deleted = conn.execute("DELETE FROM actions WHERE user_id = ?", (user_id,)).rowcount
        conn.execute("DELETE FROM preference_models WHERE user_id = ?", (user_id,))
        conn.execute("DELETE FROM recommendation_cache WHERE user_id = ?", (user_id,))
        conn.execute("DELETE FROM seen_titles WHERE user_id = ?", (user_id,))
        conn.execute("DELETE FROM user_preferences WHERE user_id = ?", (user_id,))
    logger.info(f"Deleted user {user_id} ({deleted} actions)")
    return deleted
