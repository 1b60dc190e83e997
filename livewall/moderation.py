"""
Organizer operations on events, uploads and challenges.

Every operation first resolves the event through ``require_owned_event`` so
an organizer can only act on events they created.
"""
import logging
import re
import time
import zipfile
from io import BytesIO

from livewall.errors import NotFound, StorageError, StoreError, ValidationError
from livewall.passwords import encrypt_event_password, generate_unique_event_code
from livewall.slideshow import ORDERING_MODES

logger = logging.getLogger(__name__)

ERROR_NOT_OWNED = 'Event nicht gefunden oder Sie haben keine Berechtigung'
ERROR_UPLOAD_NOT_FOUND = 'Upload nicht gefunden'
ERROR_APPROVE = 'Fehler beim Freigeben des Uploads'
ERROR_REJECT = 'Fehler beim Ablehnen des Uploads'
ERROR_BULK_APPROVE = 'Fehler beim Freigeben aller Uploads'
ERROR_DELETE_UPLOAD = 'Fehler beim Löschen des Uploads'
ERROR_DELETE_EVENT = 'Fehler beim Löschen des Events'
ERROR_DELETE_CHALLENGE = 'Fehler beim Löschen der Challenge'
ERROR_SAVE_CHALLENGE = 'Fehler beim Speichern der Challenge'
ERROR_CREATE_EVENT = 'Fehler beim Erstellen des Events. Bitte versuchen Sie es erneut.'
ERROR_UPDATE_EVENT = 'Fehler beim Aktualisieren des Events'
ERROR_AUTO_APPROVE = 'Event wurde aktualisiert, aber Fehler beim automatischen Freigeben der Bilder'
ERROR_COVER_UPLOAD = 'Fehler beim Hochladen des Cover-Bildes'
ERROR_NAME_REQUIRED = 'Event-Name ist erforderlich'
ERROR_PASSWORD_REQUIRED = 'Passwort ist erforderlich wenn Event passwortgeschützt ist'
ERROR_TITLE_REQUIRED = 'Titel ist erforderlich'
ERROR_HASHTAG_REQUIRED = 'Hashtag ist erforderlich'
ERROR_HASHTAG_CHARS = 'Hashtag darf nur Buchstaben und Zahlen enthalten'

HASHTAG_PATTERN = re.compile(r'^[a-zA-Z0-9]+$')
SORT_NEWEST = 'newest'
SORT_OLDEST = 'oldest'
MIN_DISPLAY_DURATION = 1
MAX_DISPLAY_DURATION = 300


def require_owned_event(store, event_id, user_id):
    event = store.get_owned_event(event_id, user_id)
    if event is None:
        logger.warning(f"[SECURITY] Event access denied - event_id: {event_id}, user_id: {user_id}")
        raise NotFound(ERROR_NOT_OWNED)
    return event


def _require_upload(store, event_id, upload_id):
    upload = store.get_upload(upload_id, event_id)
    if upload is None:
        raise NotFound(ERROR_UPLOAD_NOT_FOUND)
    return upload


# --- UPLOADS ---
def _set_approval(store, user_id, event_id, upload_id, approved, error_message):
    require_owned_event(store, event_id, user_id)
    _require_upload(store, event_id, upload_id)
    try:
        row = store.set_upload_approval(upload_id, event_id, approved)
    except StoreError as e:
        logger.error(f"[MODERATION] Approval change failed - event_id: {event_id}, upload_id: {upload_id}, approved: {approved}, error: {e.message}")
        raise StoreError(error_message) from e
    logger.info(f"[MODERATION] Approval changed - event_id: {event_id}, upload_id: {upload_id}, approved: {approved}")
    return row


def approve_upload(store, user_id, event_id, upload_id):
    return _set_approval(store, user_id, event_id, upload_id, True, ERROR_APPROVE)


def reject_upload(store, user_id, event_id, upload_id):
    return _set_approval(store, user_id, event_id, upload_id, False, ERROR_REJECT)


def bulk_approve(store, user_id, event_id):
    """Approve every pending upload of the event. Returns the number approved."""
    require_owned_event(store, event_id, user_id)
    try:
        rows = store.bulk_approve(event_id)
    except StoreError as e:
        logger.error(f"[MODERATION] Bulk approve failed - event_id: {event_id}, error: {e.message}")
        raise StoreError(ERROR_BULK_APPROVE) from e
    logger.info(f"[MODERATION] Bulk approved - event_id: {event_id}, count: {len(rows)}")
    return len(rows)


def _remove_object(storage, url, context):
    """Remove the object behind ``url``; failures are logged and ignored."""
    path = storage.path_from_url(url)
    if not path:
        logger.warning(f"[MODERATION] No storage path in url - {context}")
        return False
    try:
        return storage.remove(path)
    except StorageError as e:
        logger.warning(f"[MODERATION] Storage removal failed - {context}, path: {path}, error: {e.message}")
        return False


def delete_upload(store, storage, user_id, event_id, upload_id):
    require_owned_event(store, event_id, user_id)
    upload = _require_upload(store, event_id, upload_id)
    _remove_object(storage, upload.get('file_url'), f"event_id: {event_id}, upload_id: {upload_id}")
    try:
        store.delete_upload_row(upload_id, event_id)
    except StoreError as e:
        logger.error(f"[MODERATION] Upload row deletion failed - event_id: {event_id}, upload_id: {upload_id}, error: {e.message}")
        raise StoreError(f"{ERROR_DELETE_UPLOAD}: {e.message}") from e
    logger.info(f"[MODERATION] Deleted upload - event_id: {event_id}, upload_id: {upload_id}")


def delete_event(store, storage, user_id, event_id):
    """
    Delete an event with all of its media.

    Every stored object (uploads and cover image) is removed independently;
    a failing removal is logged and the rest continue. Then uploads,
    challenges and the event row go, in that order. Only the final event
    row deletion is reported back as a failure.

    Returns:
        dict with ``removed_files`` and ``failed_files`` counts.
    """
    event = require_owned_event(store, event_id, user_id)

    urls = []
    try:
        urls = [u.get('file_url') for u in store.list_uploads(event_id)]
    except StoreError as e:
        logger.warning(f"[MODERATION] Could not list uploads for cleanup - event_id: {event_id}, error: {e.message}")
    if event.get('cover_image_url'):
        urls.append(event['cover_image_url'])

    removed = 0
    for url in urls:
        if _remove_object(storage, url, f"event_id: {event_id}, operation: delete_event"):
            removed += 1

    try:
        store.delete_uploads_for_event(event_id)
    except StoreError as e:
        logger.warning(f"[MODERATION] Upload rows cleanup failed - event_id: {event_id}, error: {e.message}")
    try:
        store.delete_challenges_for_event(event_id)
    except StoreError as e:
        logger.warning(f"[MODERATION] Challenge rows cleanup failed - event_id: {event_id}, error: {e.message}")

    try:
        deleted = store.delete_event_row(event_id, user_id)
    except StoreError as e:
        logger.error(f"[MODERATION] Event row deletion failed - event_id: {event_id}, error: {e.message}")
        raise StoreError(ERROR_DELETE_EVENT) from e
    if not deleted:
        raise StoreError(ERROR_DELETE_EVENT)

    logger.info(f"[MODERATION] Deleted event - event_id: {event_id}, removed_files: {removed}, failed_files: {len(urls) - removed}")
    return {"removed_files": removed, "failed_files": len(urls) - removed}


def list_uploads(store, user_id, event_id, sort=SORT_NEWEST):
    """All uploads of the event (approved or not) with dashboard stats."""
    require_owned_event(store, event_id, user_id)
    uploads = store.list_uploads(event_id, newest_first=(sort != SORT_OLDEST))
    challenges = store.list_challenges(event_id)
    contributors = {u['uploader_name'] for u in uploads if u.get('uploader_name')}
    stats = {
        "totalUploads": len(uploads),
        "totalContributors": len(contributors),
        "totalChallenges": len(challenges),
        "pendingUploads": sum(1 for u in uploads if not u.get('approved')),
    }
    return {"uploads": uploads, "challenges": challenges, "stats": stats}


def build_uploads_zip(store, storage, user_id, event_id):
    """
    Pack the event's uploads into a ZIP archive.

    Returns:
        (zip bytes, number of files added). Unreadable objects are skipped.
    """
    require_owned_event(store, event_id, user_id)
    buf = BytesIO()
    added = 0
    with zipfile.ZipFile(buf, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for upload in store.list_uploads(event_id, newest_first=False):
            path = storage.path_from_url(upload.get('file_url'))
            if not path:
                logger.warning(f"[MODERATION] Skipping upload without storage path - upload_id: {upload.get('id')}")
                continue
            try:
                data = storage.read(path)
            except (OSError, StorageError) as e:
                logger.warning(f"[MODERATION] Skipping unreadable upload - upload_id: {upload.get('id')}, path: {path}, error: {str(e)}")
                continue
            zipf.writestr(path.rsplit('/', 1)[-1], data)
            added += 1
    logger.info(f"[MODERATION] Built uploads archive - event_id: {event_id}, files: {added}")
    return buf.getvalue(), added


# --- EVENTS ---
def store_cover_image(storage, event_code, filename, content_type, data):
    """Store a cover image under ``<event_code>/cover/`` and return its signed URL."""
    if not (content_type or '').startswith('image/'):
        raise ValidationError('Nur Bilder sind als Cover erlaubt')
    ext = (filename or '').rsplit('.', 1)[-1]
    path = f"{event_code}/cover/{int(time.time() * 1000)}.{ext}"
    try:
        storage.upload(path, data)
        return storage.create_signed_url(path)
    except StorageError as e:
        logger.error(f"[MODERATION] Cover upload failed - event_code: {event_code}, path: {path}, error: {e.message}")
        raise StorageError(ERROR_COVER_UPLOAD) from e


def create_event(store, storage, user_id, name, auto_approval=False, password_protected=False,
                 password=None, cover=None):
    """
    Create an event with a fresh unique code.

    ``cover`` is an optional ``(filename, content_type, data)`` tuple.
    """
    name = (name or '').strip()
    if not name:
        raise ValidationError(ERROR_NAME_REQUIRED)
    if password_protected and not (password or '').strip():
        raise ValidationError(ERROR_PASSWORD_REQUIRED)

    event_code = generate_unique_event_code(store)
    encrypted = encrypt_event_password(password, event_code) if password_protected else None
    cover_url = store_cover_image(storage, event_code, *cover) if cover else None

    try:
        event = store.create_event(
            user_id, name, event_code,
            cover_image_url=cover_url,
            auto_approval=bool(auto_approval),
            password_protected=bool(password_protected),
            password=encrypted,
        )
    except StoreError as e:
        logger.error(f"[MODERATION] Event creation failed - user_id: {user_id}, event_code: {event_code}, error: {e.message}")
        raise StoreError(ERROR_CREATE_EVENT) from e
    logger.info(f"[MODERATION] Created event - event_id: {event['id']}, event_code: {event_code}, user_id: {user_id}")
    return event


def _validated_settings(settings):
    fields = {}
    if 'name' in settings:
        name = (settings.get('name') or '').strip()
        if not name:
            raise ValidationError(ERROR_NAME_REQUIRED)
        fields['name'] = name
    if 'auto_approval' in settings:
        fields['auto_approval'] = bool(settings['auto_approval'])
    if 'image_display_duration' in settings:
        try:
            duration = int(settings['image_display_duration'])
        except (TypeError, ValueError):
            raise ValidationError('Anzeigedauer muss eine Zahl sein')
        if not MIN_DISPLAY_DURATION <= duration <= MAX_DISPLAY_DURATION:
            raise ValidationError(f"Anzeigedauer muss zwischen {MIN_DISPLAY_DURATION} und {MAX_DISPLAY_DURATION} Sekunden liegen")
        fields['image_display_duration'] = duration
    for key in ('upload_header_gradient', 'livewall_background_gradient'):
        if key in settings:
            fields[key] = settings[key] or None
    if 'ordering_mode' in settings:
        if settings['ordering_mode'] not in ORDERING_MODES:
            raise ValidationError('Unbekannte Reihenfolge')
        fields['ordering_mode'] = settings['ordering_mode']
    return fields


def update_event_settings(store, storage, user_id, event_id, settings, cover=None):
    """
    Apply dashboard settings to an event.

    Password rules: a new non-empty password with protection on replaces the
    stored one; turning protection off clears it. Either case counts as a
    password change so guests must verify again.

    Returns:
        dict with ``event``, ``password_changed`` and ``warning`` (None or
        the auto-approval failure message).
    """
    event = require_owned_event(store, event_id, user_id)
    fields = _validated_settings(settings)

    password_changed = False
    if 'password_protected' in settings:
        protected = bool(settings['password_protected'])
        new_password = (settings.get('password') or '').strip()
        fields['password_protected'] = protected
        if protected and new_password:
            fields['password'] = encrypt_event_password(new_password, event['event_code'])
            password_changed = True
        elif protected and not event.get('password'):
            raise ValidationError(ERROR_PASSWORD_REQUIRED)
        elif not protected:
            fields['password'] = None
            password_changed = bool(event.get('password_protected'))

    if cover:
        fields['cover_image_url'] = store_cover_image(storage, event['event_code'], *cover)

    try:
        updated = store.update_event(event_id, user_id, fields)
    except StoreError as e:
        logger.error(f"[MODERATION] Event update failed - event_id: {event_id}, error: {e.message}")
        raise StoreError(ERROR_UPDATE_EVENT) from e

    warning = None
    if fields.get('auto_approval') and not event.get('auto_approval'):
        try:
            store.bulk_approve(event_id)
        except StoreError as e:
            logger.error(f"[MODERATION] Auto approval of pending uploads failed - event_id: {event_id}, error: {e.message}")
            warning = ERROR_AUTO_APPROVE

    logger.info(f"[MODERATION] Updated event - event_id: {event_id}, fields: {sorted(fields)}, password_changed: {password_changed}")
    return {"event": updated, "password_changed": password_changed, "warning": warning}


# --- CHALLENGES ---
def derive_hashtag(title):
    return re.sub(r'\s+', '', (title or '').lower())


def normalize_challenge(title, hashtag=None):
    """Validate a challenge form. Returns ``(title, hashtag)`` with the hashtag lower-cased."""
    title = (title or '').strip()
    if not title:
        raise ValidationError(ERROR_TITLE_REQUIRED)
    hashtag = (hashtag or '').strip() or derive_hashtag(title)
    if not hashtag:
        raise ValidationError(ERROR_HASHTAG_REQUIRED)
    if not HASHTAG_PATTERN.match(hashtag):
        raise ValidationError(ERROR_HASHTAG_CHARS)
    return title, hashtag.lower()


def list_challenges(store, user_id, event_id):
    require_owned_event(store, event_id, user_id)
    return store.list_challenges(event_id)


def create_challenge(store, user_id, event_id, title, hashtag=None):
    require_owned_event(store, event_id, user_id)
    title, hashtag = normalize_challenge(title, hashtag)
    try:
        return store.create_challenge(event_id, title, hashtag)
    except StoreError as e:
        logger.error(f"[MODERATION] Challenge creation failed - event_id: {event_id}, error: {e.message}")
        raise StoreError(ERROR_SAVE_CHALLENGE) from e


def update_challenge(store, user_id, event_id, challenge_id, title, hashtag=None):
    require_owned_event(store, event_id, user_id)
    title, hashtag = normalize_challenge(title, hashtag)
    try:
        row = store.update_challenge(challenge_id, event_id, title, hashtag)
    except StoreError as e:
        logger.error(f"[MODERATION] Challenge update failed - event_id: {event_id}, challenge_id: {challenge_id}, error: {e.message}")
        raise StoreError(ERROR_SAVE_CHALLENGE) from e
    if row is None:
        raise NotFound('Challenge nicht gefunden')
    return row


def delete_challenge(store, user_id, event_id, challenge_id):
    require_owned_event(store, event_id, user_id)
    try:
        deleted = store.delete_challenge(challenge_id, event_id)
    except StoreError as e:
        logger.error(f"[MODERATION] Challenge deletion failed - event_id: {event_id}, challenge_id: {challenge_id}, error: {e.message}")
        raise StoreError(ERROR_DELETE_CHALLENGE) from e
    if not deleted:
        raise NotFound('Challenge nicht gefunden')
