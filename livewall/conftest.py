"""
Shared fixtures: an in-memory stand-in for PostgresStore, a temporary media
folder and a Flask test client wired to both.
"""
import itertools
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

from livewall.errors import StoreError
from livewall.realtime import (
    DELETE, INSERT, UPDATE, Change, ChangeFeed, event_channel, uploads_channel
)
from livewall.storage import MediaStorage
from livewall.store import EVENT_SETTINGS_COLUMNS

TEST_SECRET = 'test-secret-key'
BASE_TIME = datetime(2024, 6, 1, 18, 0, tzinfo=timezone.utc)


class FakeStore:
    """
    Dict-backed store with the same methods and row shapes as PostgresStore.

    Add an operation name to ``fail`` to make that call raise StoreError.
    """

    def __init__(self, feed=None):
        self.feed = feed
        self.organizers = {}
        self.events = {}
        self.challenges = {}
        self.uploads = {}
        self.fail = set()
        self._ticks = itertools.count()
        self._lock = threading.RLock()

    def _check(self, operation):
        if operation in self.fail:
            raise StoreError(f"Database error during {operation}")

    def _now(self):
        return (BASE_TIME + timedelta(seconds=next(self._ticks))).isoformat()

    def _publish(self, channel, change):
        if self.feed is not None:
            self.feed.publish(channel, change)

    # --- ORGANIZERS ---
    def create_organizer(self, full_name, email, password_hash):
        self._check('create_organizer')
        row = {"id": str(uuid.uuid4()), "full_name": full_name, "email": email, "password": password_hash}
        self.organizers[row['id']] = row
        return {k: row[k] for k in ('id', 'full_name', 'email')}

    def get_organizer_by_email(self, email):
        self._check('get_organizer_by_email')
        for row in list(self.organizers.values()):
            if row['email'] == email:
                return dict(row)
        return None

    # --- EVENTS ---
    def event_code_exists(self, event_code):
        self._check('event_code_exists')
        return any(e['event_code'] == event_code for e in list(self.events.values()))

    def get_event_by_code(self, event_code):
        self._check('get_event_by_code')
        for row in list(self.events.values()):
            if row['event_code'] == event_code:
                return dict(row)
        return None

    def get_event(self, event_id):
        self._check('get_event')
        row = self.events.get(event_id)
        return dict(row) if row else None

    def get_owned_event(self, event_id, user_id):
        self._check('get_owned_event')
        row = self.events.get(event_id)
        if row is None or row['user_id'] != user_id:
            return None
        return dict(row)

    def list_events_for_owner(self, user_id):
        self._check('list_events_for_owner')
        rows = [dict(e) for e in list(self.events.values()) if e['user_id'] == user_id]
        return sorted(rows, key=lambda e: e['created_at'], reverse=True)

    def create_event(self, user_id, name, event_code, cover_image_url=None, auto_approval=False,
                     password_protected=False, password=None):
        self._check('create_event')
        now = self._now()
        row = {
            "id": str(uuid.uuid4()),
            "name": name,
            "event_code": event_code,
            "cover_image_url": cover_image_url,
            "auto_approval": auto_approval,
            "password_protected": password_protected,
            "password": password,
            "user_id": user_id,
            "upload_limit": 50,
            "image_display_duration": 10,
            "upload_header_gradient": None,
            "livewall_background_gradient": None,
            "ordering_mode": 'insertion',
            "created_at": now,
            "updated_at": now,
        }
        self.events[row['id']] = row
        return dict(row)

    def update_event(self, event_id, user_id, fields):
        self._check('update_event')
        old = self.get_owned_event(event_id, user_id)
        if old is None:
            return None
        row = self.events[event_id]
        row.update({k: v for k, v in fields.items() if k in EVENT_SETTINGS_COLUMNS})
        row['updated_at'] = self._now()
        self._publish(event_channel(event_id), Change(UPDATE, 'events', new=dict(row), old=old))
        return dict(row)

    def set_upload_limit(self, event_id, user_id, upload_limit):
        self._check('set_upload_limit')
        if self.get_owned_event(event_id, user_id) is None:
            return None
        row = self.events[event_id]
        row['upload_limit'] = upload_limit
        self._publish(event_channel(event_id), Change(UPDATE, 'events', new=dict(row)))
        return dict(row)

    def delete_event_row(self, event_id, user_id):
        self._check('delete_event_row')
        if self.get_owned_event(event_id, user_id) is None:
            return False
        del self.events[event_id]
        self._publish(event_channel(event_id), Change(DELETE, 'events', old={"id": event_id}))
        return True

    # --- CHALLENGES ---
    def list_challenges(self, event_id):
        self._check('list_challenges')
        rows = [dict(c) for c in list(self.challenges.values()) if c['event_id'] == event_id]
        return sorted(rows, key=lambda c: c['created_at'], reverse=True)

    def get_challenge(self, challenge_id, event_id):
        self._check('get_challenge')
        row = self.challenges.get(challenge_id)
        if row is None or row['event_id'] != event_id:
            return None
        return dict(row)

    def create_challenge(self, event_id, title, hashtag):
        self._check('create_challenge')
        row = {"id": str(uuid.uuid4()), "event_id": event_id, "title": title,
               "hashtag": hashtag, "created_at": self._now()}
        self.challenges[row['id']] = row
        return dict(row)

    def update_challenge(self, challenge_id, event_id, title, hashtag):
        self._check('update_challenge')
        if self.get_challenge(challenge_id, event_id) is None:
            return None
        self.challenges[challenge_id].update(title=title, hashtag=hashtag)
        return dict(self.challenges[challenge_id])

    def delete_challenge(self, challenge_id, event_id):
        self._check('delete_challenge')
        if self.get_challenge(challenge_id, event_id) is None:
            return False
        del self.challenges[challenge_id]
        return True

    def delete_challenges_for_event(self, event_id):
        self._check('delete_challenges_for_event')
        ids = [c['id'] for c in list(self.challenges.values()) if c['event_id'] == event_id]
        for challenge_id in ids:
            del self.challenges[challenge_id]
        return len(ids)

    # --- UPLOADS ---
    def _joined(self, row):
        result = dict(row)
        challenge = self.challenges.get(row.get('challenge_id'))
        result['challenge_title'] = challenge['title'] if challenge else None
        result['challenge_hashtag'] = challenge['hashtag'] if challenge else None
        return result

    def count_uploads(self, event_id):
        self._check('count_uploads')
        return sum(1 for u in list(self.uploads.values()) if u['event_id'] == event_id)

    def list_uploads(self, event_id, approved_only=False, newest_first=True):
        self._check('list_uploads')
        rows = [
            self._joined(u) for u in list(self.uploads.values())
            if u['event_id'] == event_id and (u['approved'] or not approved_only)
        ]
        return sorted(rows, key=lambda u: u['created_at'], reverse=newest_first)

    def get_upload(self, upload_id, event_id):
        self._check('get_upload')
        row = self.uploads.get(upload_id)
        if row is None or row['event_id'] != event_id:
            return None
        return self._joined(row)

    def insert_upload(self, event_id, file_url, file_type, uploader_name=None, comment=None,
                      challenge_id=None, approved=False):
        self._check('insert_upload')
        row = {
            "id": str(uuid.uuid4()),
            "event_id": event_id,
            "file_url": file_url,
            "file_type": file_type,
            "uploader_name": uploader_name,
            "comment": comment,
            "challenge_id": challenge_id,
            "approved": approved,
            "created_at": self._now(),
        }
        self.uploads[row['id']] = row
        self._publish(uploads_channel(event_id), Change(INSERT, 'uploads', new=dict(row)))
        return dict(row)

    def set_upload_approval(self, upload_id, event_id, approved):
        self._check('set_upload_approval')
        if self.get_upload(upload_id, event_id) is None:
            return None
        self.uploads[upload_id]['approved'] = approved
        row = dict(self.uploads[upload_id])
        self._publish(uploads_channel(event_id), Change(UPDATE, 'uploads', new=row))
        return row

    def bulk_approve(self, event_id):
        self._check('bulk_approve')
        rows = []
        for row in list(self.uploads.values()):
            if row['event_id'] == event_id and not row['approved']:
                row['approved'] = True
                rows.append(dict(row))
        for row in rows:
            self._publish(uploads_channel(event_id), Change(UPDATE, 'uploads', new=row))
        return rows

    def delete_upload_row(self, upload_id, event_id):
        self._check('delete_upload_row')
        if self.get_upload(upload_id, event_id) is None:
            return False
        del self.uploads[upload_id]
        self._publish(uploads_channel(event_id), Change(DELETE, 'uploads', old={"id": upload_id, "event_id": event_id}))
        return True

    def delete_uploads_for_event(self, event_id):
        self._check('delete_uploads_for_event')
        ids = [u['id'] for u in list(self.uploads.values()) if u['event_id'] == event_id]
        for upload_id in ids:
            del self.uploads[upload_id]
            self._publish(uploads_channel(event_id), Change(DELETE, 'uploads', old={"id": upload_id, "event_id": event_id}))
        return len(ids)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll until ``predicate()`` is true; returns its final value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# --- FIXTURES ---
@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(feed):
    return FakeStore(feed)


@pytest.fixture
def storage(tmp_path):
    return MediaStorage(str(tmp_path / 'media'), TEST_SECRET, base_url='http://localhost')


@pytest.fixture
def organizer(store):
    return store.create_organizer('Test Organizer', 'organizer@example.com', generate_password_hash('secret123'))


@pytest.fixture
def make_event(store, organizer):
    """Create an event owned by ``organizer``; keyword arguments override columns."""
    codes = itertools.count(1)

    def _make_event(**overrides):
        event = store.create_event(organizer['id'], overrides.pop('name', 'Sommerfest'),
                                   overrides.pop('event_code', f"EVT{next(codes):02d}"))
        store.events[event['id']].update(overrides)
        return dict(store.events[event['id']])
    return _make_event


@pytest.fixture
def add_upload(store, storage):
    """Store a real media object and its upload row."""
    counter = itertools.count(1)

    def _add_upload(event, approved=True, content_type='image/jpeg', **extra):
        path = f"{event['event_code']}/gallery/{next(counter)}.jpg"
        storage.upload(path, b'\xff\xd8fake-jpeg')
        url = storage.create_signed_url(path)
        return store.insert_upload(event['id'], url, content_type, approved=approved, **extra)
    return _add_upload


@pytest.fixture
def flask_app(monkeypatch, store, storage, feed):
    from livewall import app as app_module
    from livewall.display import DisplayRegistry

    registry = DisplayRegistry(store, feed)
    monkeypatch.setattr(app_module, 'store', store)
    monkeypatch.setattr(app_module, 'storage', storage)
    monkeypatch.setattr(app_module, 'feed', feed)
    monkeypatch.setattr(app_module, 'registry', registry)
    monkeypatch.setattr(app_module, 'flyer_previews', {})
    app_module.app.config['TESTING'] = True
    yield app_module.app
    registry.stop_all()


@pytest.fixture
def client(flask_app):
    with flask_app.test_client() as client:
        yield client


@pytest.fixture
def logged_in_client(client, organizer):
    with client.session_transaction() as sess:
        sess['logged_in'] = True
        sess['user_id'] = organizer['id']
        sess['user_email'] = organizer['email']
    return client
