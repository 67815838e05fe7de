"""
Reception Review Store
======================

PostgreSQL persistence for the review crawl: subject selection, review
upserts keyed by (subject, reviewer), and the denormalized reception
profile stored on the subject row.

Tables used:
    subjects        (subject_id, title, members, score, airing, reception_data JSONB)
    subject_reviews (subject_id, reviewer, user_score, review_text, helpful_count,
                     is_preliminary, date_posted, review_length, sentiment_score,
                     sentiment_label, created_at, updated_at,
                     UNIQUE (subject_id, reviewer))

Usage:
    with ReviewStore() as store:
        subjects = store.select_subjects(SelectionMode.PRIORITY, limit=200)
        store.upsert_review(review)
"""

import json
import logging
from contextlib import contextmanager
from typing import List, Optional, Dict, Any, Iterable

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2 import pool

from .data_models import RawReview, Subject, SelectionMode


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Database operation error."""
    pass


_SUBJECT_COLUMNS = """
    s.subject_id, s.title, s.members, s.score, s.airing,
    COALESCE(r.review_count, 0) AS review_count
"""

_REVIEW_COUNTS_JOIN = """
    LEFT JOIN (
        SELECT subject_id, COUNT(*) AS review_count
        FROM subject_reviews
        GROUP BY subject_id
    ) r ON s.subject_id = r.subject_id
"""


class ReviewStore:
    """
    Subject and review persistence backed by a psycopg2 connection pool.
    """

    def __init__(self, db_pool: Optional[pool.ThreadedConnectionPool] = None):
        """
        Args:
            db_pool: Database connection pool (created from settings if None)
        """
        self._db_pool = db_pool
        self._own_pool = db_pool is None

    @property
    def db_pool(self) -> pool.ThreadedConnectionPool:
        """Lazy-initialize database connection pool."""
        if self._db_pool is None:
            from .config import get_settings
            db_config = get_settings().database
            self._db_pool = pool.ThreadedConnectionPool(
                minconn=db_config.pool_min_size,
                maxconn=db_config.pool_max_size,
                **db_config.connection_dict
            )
            logger.info("Database connection pool created")
        return self._db_pool

    @contextmanager
    def get_db_connection(self):
        """
        Get a database connection from the pool.

        Commits on success, rolls back and raises DatabaseError on failure.
        """
        conn = None
        try:
            conn = self.db_pool.getconn()
            yield conn
            conn.commit()
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            raise DatabaseError(f"Database operation failed: {e}") from e
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self.db_pool.putconn(conn)

    def close(self):
        """Clean up resources."""
        if self._own_pool and self._db_pool is not None:
            self._db_pool.closeall()
            self._db_pool = None
            logger.info("Database connection pool closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # =========================================================================
    # Subjects
    # =========================================================================

    def get_subject(self, subject_id: int) -> Optional[Subject]:
        """Look up one subject with its stored review count."""
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_SUBJECT_COLUMNS}
                    FROM subjects s
                    {_REVIEW_COUNTS_JOIN}
                    WHERE s.subject_id = %s
                    """,
                    (subject_id,)
                )
                row = cur.fetchone()
        return self._row_to_subject(row) if row else None

    def select_subjects(
        self,
        mode: SelectionMode,
        limit: int,
        exclude_ids: Iterable[int] = (),
        items_per_subject: int = 50,
        min_members: int = 1000,
    ) -> List[Subject]:
        """
        Pick crawl candidates, most popular first.

        Args:
            mode: PRIORITY (airing / popular / hidden gems / polarizing),
                  BACKFILL (fewer than items_per_subject stored reviews),
                  NEW (no stored reviews)
            limit: Maximum number of subjects
            exclude_ids: Subjects already completed
        """
        if mode == SelectionMode.PRIORITY:
            where = """
                (s.airing = true)
                OR (s.members > 50000 AND s.score IS NOT NULL)
                OR (s.score >= 8.0 AND s.members BETWEEN 1000 AND 100000)
                OR (s.score BETWEEN 6.5 AND 7.5 AND s.members > 20000)
            """
            order = "CASE WHEN s.airing THEN 1 ELSE 2 END, s.members DESC NULLS LAST"
            params: tuple = ()
        elif mode == SelectionMode.BACKFILL:
            where = "COALESCE(r.review_count, 0) < %s AND s.members > %s"
            order = "s.members DESC NULLS LAST"
            params = (items_per_subject, min_members)
        else:
            where = "r.subject_id IS NULL AND s.members > %s"
            order = "s.members DESC NULLS LAST"
            params = (min_members,)

        query = f"""
            SELECT {_SUBJECT_COLUMNS}
            FROM subjects s
            {_REVIEW_COUNTS_JOIN}
            WHERE ({where})
              AND NOT (s.subject_id = ANY(%s))
            ORDER BY {order}
            LIMIT %s
        """

        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params + (list(exclude_ids), limit))
                rows = cur.fetchall()

        subjects = [self._row_to_subject(row) for row in rows]
        logger.info(f"Selected {len(subjects)} subjects (mode={mode.value}, limit={limit})")
        return subjects

    @staticmethod
    def _row_to_subject(row: Dict[str, Any]) -> Subject:
        return Subject(
            subject_id=row["subject_id"],
            title=row.get("title") or f"Subject {row['subject_id']}",
            members=row.get("members"),
            score=float(row["score"]) if row.get("score") is not None else None,
            airing=bool(row.get("airing")),
            review_count=int(row.get("review_count") or 0),
        )

    # =========================================================================
    # Reviews
    # =========================================================================

    def review_exists(self, subject_id: int, reviewer: str) -> bool:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM subject_reviews WHERE subject_id = %s AND reviewer = %s",
                    (subject_id, reviewer)
                )
                return cur.fetchone() is not None

    def count_reviews(self, subject_id: int) -> int:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) FROM subject_reviews WHERE subject_id = %s",
                    (subject_id,)
                )
                return int(cur.fetchone()[0])

    def upsert_review(self, review: RawReview) -> bool:
        """
        Insert a review or update the existing (subject, reviewer) row.

        Returns:
            True if a new row was inserted, False if an existing row was updated
        """
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO subject_reviews (
                        subject_id, reviewer, user_score, review_text, helpful_count,
                        is_preliminary, date_posted, review_length,
                        sentiment_score, sentiment_label
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (subject_id, reviewer) DO UPDATE SET
                        user_score = EXCLUDED.user_score,
                        review_text = EXCLUDED.review_text,
                        helpful_count = EXCLUDED.helpful_count,
                        review_length = EXCLUDED.review_length,
                        sentiment_score = EXCLUDED.sentiment_score,
                        sentiment_label = EXCLUDED.sentiment_label,
                        updated_at = NOW()
                    RETURNING (xmax = 0) AS is_insert
                    """,
                    (
                        review.subject_id,
                        review.reviewer,
                        review.score,
                        review.text,
                        review.helpful_count,
                        review.is_preliminary,
                        review.date_posted,
                        review.text_length,
                        review.sentiment_score,
                        review.sentiment_label,
                    )
                )
                row = cur.fetchone()
        return bool(row and row[0])

    def load_reviews(self, subject_id: int) -> List[RawReview]:
        """Load every stored review for a subject."""
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT subject_id, reviewer, user_score, review_text, helpful_count,
                           is_preliminary, date_posted, review_length,
                           sentiment_score, sentiment_label
                    FROM subject_reviews
                    WHERE subject_id = %s
                    ORDER BY created_at, reviewer
                    """,
                    (subject_id,)
                )
                rows = cur.fetchall()

        return [
            RawReview(
                subject_id=r["subject_id"],
                reviewer=r["reviewer"],
                score=r["user_score"],
                text=r["review_text"] or "",
                helpful_count=r["helpful_count"] or 0,
                is_preliminary=bool(r["is_preliminary"]),
                date_posted=r["date_posted"],
                text_length=r["review_length"] or 0,
                sentiment_score=float(r["sentiment_score"] or 0.0),
                sentiment_label=r["sentiment_label"] or "neutral",
            )
            for r in rows
        ]

    # =========================================================================
    # Reception profiles
    # =========================================================================

    def save_reception_profile(self, subject_id: int, reception_data: Dict[str, Any]) -> None:
        """Replace the subject's reception_data document."""
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE subjects SET reception_data = %s WHERE subject_id = %s",
                    (json.dumps(reception_data, default=str), subject_id)
                )

    def load_reception_profile(self, subject_id: int) -> Optional[Dict[str, Any]]:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT reception_data FROM subjects WHERE subject_id = %s",
                    (subject_id,)
                )
                row = cur.fetchone()
        if not row or row[0] is None:
            return None
        data = row[0]
        return json.loads(data) if isinstance(data, str) else data

    def find_stale_subjects(self, limit: int = 100, max_age_days: int = 7) -> List[int]:
        """Subjects with reviews whose profile is missing or older than max_age_days."""
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT DISTINCT sr.subject_id
                    FROM subject_reviews sr
                    JOIN subjects s ON sr.subject_id = s.subject_id
                    WHERE s.reception_data IS NULL
                       OR (s.reception_data->>'last_analyzed')::timestamptz
                          < NOW() - make_interval(days => %s)
                    LIMIT %s
                    """,
                    (max_age_days, limit)
                )
                return [row[0] for row in cur.fetchall()]

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self, min_members: int = 1000) -> Dict[str, Any]:
        """Database-wide review coverage numbers."""
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM subjects")
                total_subjects = cur.fetchone()[0]

                cur.execute("SELECT COUNT(DISTINCT subject_id), COUNT(*) FROM subject_reviews")
                subjects_with_reviews, total_reviews = cur.fetchone()

                cur.execute(
                    """
                    SELECT COUNT(*)
                    FROM subjects s
                    LEFT JOIN subject_reviews r ON s.subject_id = r.subject_id
                    WHERE r.subject_id IS NULL AND s.members > %s
                    """,
                    (min_members,)
                )
                subjects_needing_reviews = cur.fetchone()[0]

        return {
            "total_subjects": total_subjects,
            "subjects_with_reviews": subjects_with_reviews,
            "total_reviews": total_reviews,
            "avg_reviews_per_subject": (
                round(total_reviews / subjects_with_reviews, 1) if subjects_with_reviews else 0.0
            ),
            "subjects_needing_reviews": subjects_needing_reviews,
        }
