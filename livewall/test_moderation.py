"""
Tests for organizer moderation: uploads, events, settings and challenges.
"""
import io
import logging
import os
import zipfile

import pytest

from livewall import moderation
from livewall.errors import NotFound, StoreError, ValidationError
from livewall.passwords import decrypt_event_password
from livewall.realtime import DELETE, UPDATE, event_channel, uploads_channel


@pytest.fixture
def recorded(feed):
    """Changes published on the uploads and events channels of any event id passed in."""
    changes = []

    def watch(event_id):
        feed.subscribe(uploads_channel(event_id), changes.append)
        feed.subscribe(event_channel(event_id), changes.append)
        return changes
    return watch


# --- OWNERSHIP ---

def test_foreign_event_is_not_found(store, make_event, caplog):
    event = make_event()
    with caplog.at_level(logging.WARNING):
        with pytest.raises(NotFound) as exc:
            moderation.require_owned_event(store, event['id'], 'someone-else')
    assert exc.value.message == moderation.ERROR_NOT_OWNED
    assert any('[SECURITY] Event access denied' in r.message for r in caplog.records)


def test_foreign_organizer_cannot_approve(store, make_event, add_upload):
    event = make_event()
    upload = add_upload(event, approved=False)
    with pytest.raises(NotFound):
        moderation.approve_upload(store, 'someone-else', event['id'], upload['id'])
    assert store.uploads[upload['id']]['approved'] is False


# --- UPLOADS ---

def test_approve_and_reject_publish_changes(store, organizer, make_event, add_upload, recorded):
    event = make_event()
    upload = add_upload(event, approved=False)
    changes = recorded(event['id'])

    row = moderation.approve_upload(store, organizer['id'], event['id'], upload['id'])
    assert row['approved'] is True
    row = moderation.reject_upload(store, organizer['id'], event['id'], upload['id'])
    assert row['approved'] is False
    assert [c.type for c in changes] == [UPDATE, UPDATE]


def test_approve_unknown_upload(store, organizer, make_event):
    event = make_event()
    with pytest.raises(NotFound) as exc:
        moderation.approve_upload(store, organizer['id'], event['id'], 'missing')
    assert exc.value.message == moderation.ERROR_UPLOAD_NOT_FOUND


def test_approve_store_failure(store, organizer, make_event, add_upload):
    event = make_event()
    upload = add_upload(event, approved=False)
    store.fail.add('set_upload_approval')
    with pytest.raises(StoreError) as exc:
        moderation.approve_upload(store, organizer['id'], event['id'], upload['id'])
    assert exc.value.message == moderation.ERROR_APPROVE


def test_bulk_approve_counts_pending_only(store, organizer, make_event, add_upload):
    event = make_event()
    add_upload(event, approved=True)
    add_upload(event, approved=False)
    add_upload(event, approved=False)

    assert moderation.bulk_approve(store, organizer['id'], event['id']) == 2
    assert all(u['approved'] for u in store.uploads.values())
    assert moderation.bulk_approve(store, organizer['id'], event['id']) == 0


def test_delete_upload_removes_object_and_row(store, storage, organizer, make_event, add_upload, recorded):
    event = make_event()
    upload = add_upload(event)
    path = storage.path_from_url(upload['file_url'])
    changes = recorded(event['id'])

    moderation.delete_upload(store, storage, organizer['id'], event['id'], upload['id'])

    assert upload['id'] not in store.uploads
    assert storage.remove(path) is False
    assert [c.type for c in changes] == [DELETE]


def test_delete_upload_survives_missing_object(store, storage, organizer, make_event, add_upload):
    event = make_event()
    upload = add_upload(event)
    storage.remove(storage.path_from_url(upload['file_url']))

    moderation.delete_upload(store, storage, organizer['id'], event['id'], upload['id'])
    assert upload['id'] not in store.uploads


def test_delete_upload_row_failure_names_cause(store, storage, organizer, make_event, add_upload):
    event = make_event()
    upload = add_upload(event)
    store.fail.add('delete_upload_row')
    with pytest.raises(StoreError) as exc:
        moderation.delete_upload(store, storage, organizer['id'], event['id'], upload['id'])
    assert exc.value.message.startswith('Fehler beim Löschen des Uploads: ')


def test_list_uploads_with_stats(store, organizer, make_event, add_upload):
    event = make_event()
    store.create_challenge(event['id'], 'Tanzfläche', 'dance')
    add_upload(event, approved=True, uploader_name='Lisa')
    add_upload(event, approved=False, uploader_name='Lisa')
    add_upload(event, approved=False, uploader_name='Tom')
    add_upload(event, approved=True)

    result = moderation.list_uploads(store, organizer['id'], event['id'])
    assert result['stats'] == {
        "totalUploads": 4,
        "totalContributors": 2,
        "totalChallenges": 1,
        "pendingUploads": 2,
    }
    created = [u['created_at'] for u in result['uploads']]
    assert created == sorted(created, reverse=True)

    oldest = moderation.list_uploads(store, organizer['id'], event['id'], sort='oldest')
    assert [u['created_at'] for u in oldest['uploads']] == sorted(created)


def test_uploads_zip_skips_missing_files(store, storage, organizer, make_event, add_upload):
    event = make_event()
    kept = add_upload(event)
    gone = add_upload(event)
    storage.remove(storage.path_from_url(gone['file_url']))

    archive, count = moderation.build_uploads_zip(store, storage, organizer['id'], event['id'])

    assert count == 1
    with zipfile.ZipFile(io.BytesIO(archive)) as zipf:
        assert zipf.namelist() == [storage.path_from_url(kept['file_url']).rsplit('/', 1)[-1]]


# --- EVENTS ---

def test_create_event(store, storage, organizer):
    event = moderation.create_event(store, storage, organizer['id'], '  Sommerfest  ',
                                    password_protected=True, password='geheim',
                                    cover=('cover.png', 'image/png', b'png'))
    assert event['name'] == 'Sommerfest'
    assert len(event['event_code']) == 5
    assert event['password'] != 'geheim'
    assert decrypt_event_password(event['password'], event['event_code']) == 'geheim'
    assert storage.path_from_url(event['cover_image_url']).startswith(f"{event['event_code']}/cover/")


def test_create_event_validation(store, storage, organizer):
    with pytest.raises(ValidationError) as exc:
        moderation.create_event(store, storage, organizer['id'], '   ')
    assert exc.value.message == moderation.ERROR_NAME_REQUIRED
    with pytest.raises(ValidationError) as exc:
        moderation.create_event(store, storage, organizer['id'], 'Party', password_protected=True)
    assert exc.value.message == moderation.ERROR_PASSWORD_REQUIRED


def test_cover_must_be_image(store, storage, organizer):
    with pytest.raises(ValidationError):
        moderation.create_event(store, storage, organizer['id'], 'Party', cover=('a.mp4', 'video/mp4', b'mp4'))


def test_delete_event_removes_everything(store, storage, organizer, make_event, add_upload, recorded):
    event = make_event()
    uploads = [add_upload(event), add_upload(event)]
    store.create_challenge(event['id'], 'Selfie', 'selfie')
    changes = recorded(event['id'])

    summary = moderation.delete_event(store, storage, organizer['id'], event['id'])

    assert summary == {"removed_files": 2, "failed_files": 0}
    assert store.events == {} and store.uploads == {} and store.challenges == {}
    for upload in uploads:
        assert storage.remove(storage.path_from_url(upload['file_url'])) is False
    assert changes[-1].table == 'events' and changes[-1].type == DELETE


def test_delete_event_continues_past_failed_removals(store, storage, organizer, make_event, add_upload):
    event = make_event(cover_image_url='https://example.com/not-ours.jpg')
    first = add_upload(event)
    add_upload(event)
    storage.remove(storage.path_from_url(first['file_url']))

    summary = moderation.delete_event(store, storage, organizer['id'], event['id'])

    assert summary == {"removed_files": 1, "failed_files": 2}
    assert store.events == {}


def test_delete_event_row_failure(store, storage, organizer, make_event):
    event = make_event()
    store.fail.add('delete_event_row')
    with pytest.raises(StoreError) as exc:
        moderation.delete_event(store, storage, organizer['id'], event['id'])
    assert exc.value.message == moderation.ERROR_DELETE_EVENT


# --- SETTINGS ---

def test_update_settings(store, storage, organizer, make_event, recorded):
    event = make_event()
    changes = recorded(event['id'])
    result = moderation.update_event_settings(store, storage, organizer['id'], event['id'], {
        "name": "Neuer Name",
        "image_display_duration": "15",
        "ordering_mode": "newest-first",
        "livewall_background_gradient": "",
    })
    updated = result['event']
    assert updated['name'] == 'Neuer Name'
    assert updated['image_display_duration'] == 15
    assert updated['ordering_mode'] == 'newest-first'
    assert updated['livewall_background_gradient'] is None
    assert result['password_changed'] is False
    assert result['warning'] is None
    assert changes[-1].new['ordering_mode'] == 'newest-first'


@pytest.mark.parametrize("settings", [
    {"image_display_duration": 0},
    {"image_display_duration": 301},
    {"image_display_duration": "schnell"},
    {"ordering_mode": "random"},
    {"name": ""},
])
def test_invalid_settings(store, storage, organizer, make_event, settings):
    event = make_event()
    with pytest.raises(ValidationError):
        moderation.update_event_settings(store, storage, organizer['id'], event['id'], settings)


def test_setting_new_password(store, storage, organizer, make_event):
    event = make_event()
    result = moderation.update_event_settings(store, storage, organizer['id'], event['id'], {
        "password_protected": True, "password": "neu",
    })
    assert result['password_changed'] is True
    assert decrypt_event_password(result['event']['password'], event['event_code']) == 'neu'


def test_protection_without_password_is_rejected(store, storage, organizer, make_event):
    event = make_event()
    with pytest.raises(ValidationError):
        moderation.update_event_settings(store, storage, organizer['id'], event['id'], {"password_protected": True})


def test_disabling_protection_clears_password(store, storage, organizer, make_event):
    event = make_event(password_protected=True, password='stored')
    result = moderation.update_event_settings(store, storage, organizer['id'], event['id'], {"password_protected": False})
    assert result['event']['password'] is None
    assert result['password_changed'] is True


def _cover_files(storage):
    return [name for _, _, files in os.walk(storage.root) for name in files]


def test_rejected_password_stores_no_cover(store, storage, organizer):
    with pytest.raises(ValidationError):
        moderation.create_event(store, storage, organizer['id'], 'Party',
                                password_protected=True, password='x€',
                                cover=('cover.png', 'image/png', b'png'))
    assert _cover_files(storage) == []


def test_rejected_new_password_keeps_old_cover(store, storage, organizer, make_event):
    event = make_event()
    with pytest.raises(ValidationError):
        moderation.update_event_settings(store, storage, organizer['id'], event['id'],
                                         {"password_protected": True, "password": "x€"},
                                         cover=('cover.png', 'image/png', b'png'))
    assert _cover_files(storage) == []
    assert store.get_event(event['id'])['cover_image_url'] is None


def test_enabling_auto_approval_approves_pending(store, storage, organizer, make_event, add_upload):
    event = make_event(auto_approval=False)
    add_upload(event, approved=False)
    result = moderation.update_event_settings(store, storage, organizer['id'], event['id'], {"auto_approval": True})
    assert result['warning'] is None
    assert all(u['approved'] for u in store.uploads.values())


def test_auto_approval_failure_is_a_warning(store, storage, organizer, make_event, add_upload):
    event = make_event(auto_approval=False)
    add_upload(event, approved=False)
    store.fail.add('bulk_approve')
    result = moderation.update_event_settings(store, storage, organizer['id'], event['id'], {"auto_approval": True})
    assert result['event']['auto_approval'] is True
    assert result['warning'] == moderation.ERROR_AUTO_APPROVE


# --- CHALLENGES ---

def test_derive_hashtag():
    assert moderation.derive_hashtag('Bestes Gruppen Foto') == 'bestesgruppenfoto'


def test_normalize_challenge():
    assert moderation.normalize_challenge('Tanz', 'DanceFloor') == ('Tanz', 'dancefloor')
    assert moderation.normalize_challenge(' Erstes Foto ') == ('Erstes Foto', 'erstesfoto')
    with pytest.raises(ValidationError) as exc:
        moderation.normalize_challenge('Party!')
    assert exc.value.message == moderation.ERROR_HASHTAG_CHARS
    with pytest.raises(ValidationError):
        moderation.normalize_challenge('')


def test_challenge_lifecycle(store, organizer, make_event):
    event = make_event()
    challenge = moderation.create_challenge(store, organizer['id'], event['id'], 'Selfie', 'Selfie')
    assert challenge['hashtag'] == 'selfie'

    updated = moderation.update_challenge(store, organizer['id'], event['id'], challenge['id'], 'Gruppenbild')
    assert updated['hashtag'] == 'gruppenbild'
    assert [c['id'] for c in moderation.list_challenges(store, organizer['id'], event['id'])] == [challenge['id']]

    moderation.delete_challenge(store, organizer['id'], event['id'], challenge['id'])
    with pytest.raises(NotFound):
        moderation.delete_challenge(store, organizer['id'], event['id'], challenge['id'])
