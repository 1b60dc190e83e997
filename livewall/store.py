"""
PostgreSQL persistence for organizers, events, challenges and uploads.

Every organizer-facing query carries ``user_id`` so an organizer can never
touch another organizer's event. After a write on ``uploads`` or ``events``
commits, the matching ``Change`` is published on the change feed so live
wall displays pick it up.
"""
import logging
import uuid
from datetime import date, datetime

import psycopg2
import psycopg2.extras

from livewall.errors import StoreError
from livewall.realtime import (
    DELETE, INSERT, UPDATE, Change, event_channel, uploads_channel
)

logger = logging.getLogger(__name__)

EVENT_SETTINGS_COLUMNS = (
    'name', 'cover_image_url', 'auto_approval', 'password_protected', 'password',
    'image_display_duration', 'upload_header_gradient', 'livewall_background_gradient',
    'ordering_mode',
)

UPLOAD_SELECT = """
    SELECT u.*, c.title AS challenge_title, c.hashtag AS challenge_hashtag
    FROM uploads u
    LEFT JOIN challenges c ON c.id = u.challenge_id
"""


# --- DB HELPER ---
def get_db_connection(dsn):
    """
    Connect to PostgreSQL using the given DATABASE_URL.
    """
    try:
        return psycopg2.connect(dsn)
    except Exception:
        # Log error without exposing connection string details
        logger.error("[DB] Database connection failed")
        return None


def serialize_row(row):
    """Plain dict with ISO timestamps and string ids."""
    if row is None:
        return None
    result = dict(row)
    for key, value in result.items():
        if isinstance(value, (datetime, date)):
            result[key] = value.isoformat()
        elif isinstance(value, uuid.UUID):
            result[key] = str(value)
    return result


class PostgresStore:

    def __init__(self, dsn, feed=None):
        self.dsn = dsn
        self.feed = feed

    def _run(self, operation, query, params=(), fetch=None):
        conn = get_db_connection(self.dsn)
        if conn is None:
            raise StoreError("Database connection failed")
        cursor = None
        try:
            cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            cursor.execute(query, params)
            if fetch == 'one':
                result = serialize_row(cursor.fetchone())
            elif fetch == 'all':
                result = [serialize_row(r) for r in cursor.fetchall()]
            else:
                result = cursor.rowcount
            conn.commit()
            return result
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"[DB] Query failed - operation: {operation}, error: {str(e)}")
            raise StoreError(f"Database error during {operation}") from e
        finally:
            if cursor is not None:
                cursor.close()
            conn.close()

    def _publish(self, channel, change):
        if self.feed is not None:
            self.feed.publish(channel, change)

    # --- ORGANIZERS ---
    def create_organizer(self, full_name, email, password_hash):
        return self._run(
            'create_organizer',
            """
            INSERT INTO organizers (full_name, email, password)
            VALUES (%s, %s, %s)
            RETURNING id, full_name, email
            """,
            (full_name, email, password_hash), fetch='one'
        )

    def get_organizer_by_email(self, email):
        return self._run(
            'get_organizer_by_email',
            "SELECT id, full_name, email, password FROM organizers WHERE email = %s",
            (email,), fetch='one'
        )

    # --- EVENTS ---
    def event_code_exists(self, event_code):
        row = self._run(
            'event_code_exists',
            "SELECT 1 AS found FROM events WHERE event_code = %s",
            (event_code,), fetch='one'
        )
        return row is not None

    def get_event_by_code(self, event_code):
        return self._run(
            'get_event_by_code',
            "SELECT * FROM events WHERE event_code = %s",
            (event_code,), fetch='one'
        )

    def get_event(self, event_id):
        return self._run(
            'get_event',
            "SELECT * FROM events WHERE id = %s",
            (event_id,), fetch='one'
        )

    def get_owned_event(self, event_id, user_id):
        return self._run(
            'get_owned_event',
            "SELECT * FROM events WHERE id = %s AND user_id = %s",
            (event_id, user_id), fetch='one'
        )

    def list_events_for_owner(self, user_id):
        return self._run(
            'list_events_for_owner',
            "SELECT * FROM events WHERE user_id = %s ORDER BY created_at DESC",
            (user_id,), fetch='all'
        )

    def create_event(self, user_id, name, event_code, cover_image_url=None, auto_approval=False,
                     password_protected=False, password=None):
        return self._run(
            'create_event',
            """
            INSERT INTO events (name, event_code, cover_image_url, auto_approval,
                                password_protected, password, user_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (name, event_code, cover_image_url, auto_approval, password_protected, password, user_id),
            fetch='one'
        )

    def update_event(self, event_id, user_id, fields):
        columns = [c for c in fields if c in EVENT_SETTINGS_COLUMNS]
        if not columns:
            return self.get_owned_event(event_id, user_id)
        assignments = ', '.join(f"{c} = %s" for c in columns)
        params = [fields[c] for c in columns] + [event_id, user_id]
        old = self.get_owned_event(event_id, user_id)
        row = self._run(
            'update_event',
            f"UPDATE events SET {assignments}, updated_at = now() WHERE id = %s AND user_id = %s RETURNING *",
            params, fetch='one'
        )
        if row is not None:
            self._publish(event_channel(event_id), Change(UPDATE, 'events', new=row, old=old))
        return row

    def set_upload_limit(self, event_id, user_id, upload_limit):
        row = self._run(
            'set_upload_limit',
            """
            UPDATE events SET upload_limit = %s, updated_at = now()
            WHERE id = %s AND user_id = %s
            RETURNING *
            """,
            (upload_limit, event_id, user_id), fetch='one'
        )
        if row is not None:
            self._publish(event_channel(event_id), Change(UPDATE, 'events', new=row))
        return row

    def delete_event_row(self, event_id, user_id):
        row = self._run(
            'delete_event_row',
            "DELETE FROM events WHERE id = %s AND user_id = %s RETURNING id",
            (event_id, user_id), fetch='one'
        )
        if row is not None:
            self._publish(event_channel(event_id), Change(DELETE, 'events', old=row))
        return row is not None

    # --- CHALLENGES ---
    def list_challenges(self, event_id):
        return self._run(
            'list_challenges',
            "SELECT * FROM challenges WHERE event_id = %s ORDER BY created_at DESC",
            (event_id,), fetch='all'
        )

    def get_challenge(self, challenge_id, event_id):
        return self._run(
            'get_challenge',
            "SELECT * FROM challenges WHERE id = %s AND event_id = %s",
            (challenge_id, event_id), fetch='one'
        )

    def create_challenge(self, event_id, title, hashtag):
        return self._run(
            'create_challenge',
            "INSERT INTO challenges (event_id, title, hashtag) VALUES (%s, %s, %s) RETURNING *",
            (event_id, title, hashtag), fetch='one'
        )

    def update_challenge(self, challenge_id, event_id, title, hashtag):
        return self._run(
            'update_challenge',
            "UPDATE challenges SET title = %s, hashtag = %s WHERE id = %s AND event_id = %s RETURNING *",
            (title, hashtag, challenge_id, event_id), fetch='one'
        )

    def delete_challenge(self, challenge_id, event_id):
        return self._run(
            'delete_challenge',
            "DELETE FROM challenges WHERE id = %s AND event_id = %s",
            (challenge_id, event_id)
        ) > 0

    def delete_challenges_for_event(self, event_id):
        return self._run(
            'delete_challenges_for_event',
            "DELETE FROM challenges WHERE event_id = %s",
            (event_id,)
        )

    # --- UPLOADS ---
    def count_uploads(self, event_id):
        row = self._run(
            'count_uploads',
            "SELECT COUNT(*) AS total FROM uploads WHERE event_id = %s",
            (event_id,), fetch='one'
        )
        return row['total']

    def list_uploads(self, event_id, approved_only=False, newest_first=True):
        where = "WHERE u.event_id = %s" + (" AND u.approved = TRUE" if approved_only else "")
        order = "DESC" if newest_first else "ASC"
        return self._run(
            'list_uploads',
            f"{UPLOAD_SELECT} {where} ORDER BY u.created_at {order}",
            (event_id,), fetch='all'
        )

    def get_upload(self, upload_id, event_id):
        return self._run(
            'get_upload',
            f"{UPLOAD_SELECT} WHERE u.id = %s AND u.event_id = %s",
            (upload_id, event_id), fetch='one'
        )

    def insert_upload(self, event_id, file_url, file_type, uploader_name=None, comment=None,
                      challenge_id=None, approved=False):
        row = self._run(
            'insert_upload',
            """
            INSERT INTO uploads (event_id, file_url, file_type, uploader_name, comment,
                                 challenge_id, approved)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (event_id, file_url, file_type, uploader_name, comment, challenge_id, approved),
            fetch='one'
        )
        self._publish(uploads_channel(event_id), Change(INSERT, 'uploads', new=row))
        return row

    def set_upload_approval(self, upload_id, event_id, approved):
        row = self._run(
            'set_upload_approval',
            "UPDATE uploads SET approved = %s WHERE id = %s AND event_id = %s RETURNING *",
            (approved, upload_id, event_id), fetch='one'
        )
        if row is not None:
            self._publish(uploads_channel(event_id), Change(UPDATE, 'uploads', new=row))
        return row

    def bulk_approve(self, event_id):
        rows = self._run(
            'bulk_approve',
            "UPDATE uploads SET approved = TRUE WHERE event_id = %s AND approved = FALSE RETURNING *",
            (event_id,), fetch='all'
        )
        for row in rows:
            self._publish(uploads_channel(event_id), Change(UPDATE, 'uploads', new=row))
        return rows

    def delete_upload_row(self, upload_id, event_id):
        row = self._run(
            'delete_upload_row',
            "DELETE FROM uploads WHERE id = %s AND event_id = %s RETURNING id, event_id",
            (upload_id, event_id), fetch='one'
        )
        if row is not None:
            self._publish(uploads_channel(event_id), Change(DELETE, 'uploads', old=row))
        return row is not None

    def delete_uploads_for_event(self, event_id):
        rows = self._run(
            'delete_uploads_for_event',
            "DELETE FROM uploads WHERE event_id = %s RETURNING id, event_id",
            (event_id,), fetch='all'
        )
        for row in rows:
            self._publish(uploads_channel(event_id), Change(DELETE, 'uploads', old=row))
        return len(rows)
