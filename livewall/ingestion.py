"""
Guest upload ingestion.

Guests are anonymous: they only know the event code. A file goes through
validate -> store object -> sign URL -> look up the event -> insert the
metadata row. Each failure point maps to its own German message so the
upload page can show it verbatim.
"""
import logging
import time
from dataclasses import dataclass

from livewall.errors import StorageError, StoreError
from livewall.storage import ONE_YEAR_SECONDS

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

ERROR_FILE_TYPE = 'Nur Bilder und Videos sind erlaubt'
ERROR_FILE_SIZE = 'Datei ist zu groß. Maximum 10MB erlaubt.'
ERROR_STORAGE = 'Fehler beim Hochladen der Datei'
ERROR_SIGNED_URL = 'Fehler beim Generieren der Bild-URL'
ERROR_EVENT_NOT_FOUND = 'Event nicht gefunden'
ERROR_QUOTA = 'Upload-Limit für dieses Event erreicht'
ERROR_INSERT = 'Fehler beim Speichern der Upload-Informationen'
ERROR_UNEXPECTED = 'Ein unerwarteter Fehler ist aufgetreten'
ERROR_CODE_CHECK = 'Fehler beim Überprüfen des Event-Codes'


@dataclass
class GuestUploadResult:
    success: bool
    file_url: str = None
    auto_approved: bool = False
    error: str = None

    def to_dict(self):
        if not self.success:
            return {"success": False, "error": self.error}
        return {"success": True, "fileUrl": self.file_url, "autoApproved": self.auto_approved}


def validate_media(content_type, size):
    """Return an error message for a file the wall cannot take, or None."""
    content_type = content_type or ''
    if not (content_type.startswith('image/') or content_type.startswith('video/')):
        return ERROR_FILE_TYPE
    if size > MAX_UPLOAD_BYTES:
        return ERROR_FILE_SIZE
    return None


def gallery_object_path(event_code, filename, timestamp_ms=None):
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    ext = (filename or '').rsplit('.', 1)[-1]
    return f"{event_code}/gallery/{timestamp_ms}.{ext}"


def upload_guest_media(store, storage, event_code, filename, content_type, data,
                       uploader_name=None, comment=None, challenge_id=None,
                       expires_in=ONE_YEAR_SECONDS):
    """
    Store one guest file and register it for the event.

    Returns:
        GuestUploadResult; never raises.
    """
    try:
        error = validate_media(content_type, len(data))
        if error:
            logger.warning(f"[UPLOAD] Rejected file - event_code: {event_code}, content_type: {content_type}, bytes: {len(data)}, reason: {error}")
            return GuestUploadResult(success=False, error=error)

        path = gallery_object_path(event_code, filename)
        try:
            storage.upload(path, data)
        except StorageError as e:
            logger.error(f"[UPLOAD] Storage write failed - event_code: {event_code}, path: {path}, error: {e.message}, operation: upload_guest_media")
            return GuestUploadResult(success=False, error=ERROR_STORAGE)

        try:
            file_url = storage.create_signed_url(path, expires_in)
        except StorageError as e:
            logger.error(f"[UPLOAD] Signed URL failed - event_code: {event_code}, path: {path}, error: {e.message}, operation: upload_guest_media")
            return GuestUploadResult(success=False, error=ERROR_SIGNED_URL)

        try:
            event = store.get_event_by_code(event_code)
        except StoreError as e:
            logger.error(f"[UPLOAD] Event lookup failed - event_code: {event_code}, error: {e.message}, operation: upload_guest_media")
            event = None
        if event is None:
            return GuestUploadResult(success=False, error=ERROR_EVENT_NOT_FOUND)

        limit = event.get('upload_limit')
        if limit is not None and store.count_uploads(event['id']) >= limit:
            logger.warning(f"[UPLOAD] Upload limit reached - event_code: {event_code}, upload_limit: {limit}, operation: upload_guest_media")
            try:
                storage.remove(path)
            except StorageError as e:
                logger.warning(f"[UPLOAD] Could not remove rejected object - path: {path}, error: {e.message}")
            return GuestUploadResult(success=False, error=ERROR_QUOTA)

        auto_approved = bool(event.get('auto_approval'))
        try:
            store.insert_upload(
                event['id'],
                file_url,
                content_type,
                uploader_name=uploader_name or None,
                comment=comment or None,
                challenge_id=challenge_id or None,
                approved=auto_approved,
            )
        except StoreError as e:
            logger.error(f"[UPLOAD] Metadata insert failed - event_code: {event_code}, path: {path}, error: {e.message}, operation: upload_guest_media")
            return GuestUploadResult(success=False, error=ERROR_INSERT)

        logger.info(f"[UPLOAD] Stored guest upload - event_code: {event_code}, path: {path}, auto_approved: {auto_approved}")
        return GuestUploadResult(success=True, file_url=file_url, auto_approved=auto_approved)

    except Exception as e:
        logger.exception(f"[UPLOAD] Unexpected error - event_code: {event_code}, error: {str(e)}, operation: upload_guest_media")
        return GuestUploadResult(success=False, error=ERROR_UNEXPECTED)


def validate_event_code(store, event_code):
    """Look up an event by code for the guest entry page."""
    try:
        event = store.get_event_by_code(event_code)
    except StoreError as e:
        logger.error(f"[UPLOAD] Event code check failed - event_code: {event_code}, error: {e.message}")
        return {"valid": False, "error": ERROR_CODE_CHECK}

    if event is None:
        return {"valid": False, "error": ERROR_EVENT_NOT_FOUND}

    summary = {
        "id": event['id'],
        "name": event['name'],
        "event_code": event['event_code'],
        "password_protected": bool(event.get('password_protected')),
        "cover_image_url": event.get('cover_image_url'),
        "upload_header_gradient": event.get('upload_header_gradient'),
    }
    return {"valid": True, "event": summary, "requires_password": summary['password_protected']}
