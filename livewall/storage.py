"""
Media object storage.

Guest uploads and cover images live below ``UPLOAD_FOLDER`` under
``<event_code>/gallery/`` and ``<event_code>/cover/``. The folder is never
served directly: clients receive time-limited signed URLs
(``/media/<token>``) whose token names the object path and its validity.
"""
import logging
import os
import re
import time
from urllib.parse import urlparse

from itsdangerous import BadData, URLSafeTimedSerializer

from livewall.errors import NotFound, PermissionDenied, StorageError

logger = logging.getLogger(__name__)

ONE_YEAR_SECONDS = 31536000
SIGNING_SALT = 'event-media'


# --- SECURITY HELPERS ---
def sanitize_filename(filename):
    """
    Sanitize filename to prevent path traversal attacks.
    Removes directory separators and ensures filename is safe.
    """
    filename = os.path.basename(filename)
    filename = filename.replace('/', '').replace('\\', '')
    filename = filename.replace('\x00', '')
    filename = filename.lstrip('.')
    filename = re.sub(r'[^a-zA-Z0-9._-]', '_', filename)
    return filename


def sanitize_path_component(component):
    """
    Sanitize a path component (like an event code) to prevent path traversal.
    """
    component = str(component).replace('/', '').replace('\\', '')
    component = component.replace('\x00', '')
    component = component.replace('..', '')
    return component


def sanitize_object_path(path):
    """Sanitize every component of a relative object path like ``ABC12/gallery/1.jpg``."""
    parts = [p for p in str(path).replace('\\', '/').split('/') if p]
    if not parts:
        return ''
    *dirs, name = parts
    cleaned = [sanitize_path_component(d) for d in dirs] + [sanitize_filename(name)]
    return '/'.join(p for p in cleaned if p)


class MediaStorage:

    def __init__(self, root, secret_key, base_url='', url_prefix='/media'):
        self.root = root
        self.base_url = base_url.rstrip('/')
        self.url_prefix = url_prefix
        self._serializer = URLSafeTimedSerializer(secret_key, salt=SIGNING_SALT)

    def full_path(self, path):
        safe = sanitize_object_path(path)
        if safe != path:
            logger.warning(f"[SECURITY] Object path sanitization applied - original_path: {path}, sanitized_path: {safe}, operation: full_path")
        if not safe:
            raise StorageError("Invalid object path")
        full = os.path.join(self.root, *safe.split('/'))
        if not os.path.realpath(full).startswith(os.path.realpath(self.root)):
            logger.error(f"[SECURITY] Path traversal attempt detected - path: {path}, operation: full_path")
            raise StorageError("Invalid object path")
        return full

    def upload(self, path, data):
        """Write ``data`` to ``path``; existing objects are never overwritten."""
        full = self.full_path(path)
        if os.path.exists(full):
            logger.error(f"[STORAGE] Object already exists - path: {path}, operation: upload")
            raise StorageError("The resource already exists")
        try:
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, 'wb') as f:
                f.write(data)
        except OSError as e:
            logger.error(f"[STORAGE] Write failed - path: {path}, error: {str(e)}, operation: upload")
            raise StorageError("Failed to store object") from e
        logger.info(f"[STORAGE] Stored object - path: {path}, bytes: {len(data)}, operation: upload")
        return path

    def remove(self, path):
        """Remove one object. Returns False when it was already gone."""
        full = self.full_path(path)
        if not os.path.exists(full):
            logger.warning(f"[STORAGE] Object not found for removal - path: {path}, operation: remove")
            return False
        try:
            os.remove(full)
        except OSError as e:
            logger.error(f"[STORAGE] Removal failed - path: {path}, error: {str(e)}, operation: remove")
            raise StorageError("Failed to remove object") from e
        logger.info(f"[STORAGE] Removed object - path: {path}, operation: remove")
        return True

    def read(self, path):
        with open(self.full_path(path), 'rb') as f:
            return f.read()

    # --- SIGNED URLS ---
    def create_signed_url(self, path, expires_in=ONE_YEAR_SECONDS):
        if not os.path.exists(self.full_path(path)):
            logger.error(f"[STORAGE] Cannot sign missing object - path: {path}, operation: create_signed_url")
            raise StorageError("Object not found")
        token = self._serializer.dumps({'path': path, 'expires_in': int(expires_in)})
        return f"{self.base_url}{self.url_prefix}/{token}"

    def resolve_signed_token(self, token):
        """
        Verify a media token and return the object path it grants.

        Raises:
            PermissionDenied: bad signature or expired link.
            NotFound: the object no longer exists.
        """
        try:
            data, signed_at = self._serializer.loads(token, return_timestamp=True)
        except BadData:
            logger.warning("[SECURITY] Invalid media token signature, operation: resolve_signed_token")
            raise PermissionDenied("Invalid signature")

        age = time.time() - signed_at.timestamp()
        if age > data.get('expires_in', 0):
            logger.warning(f"[STORAGE] Expired media token - path: {data.get('path')}, age: {int(age)}, operation: resolve_signed_token")
            raise PermissionDenied("Link expired")

        path = data.get('path', '')
        if not os.path.exists(self.full_path(path)):
            raise NotFound("Object not found")
        return path

    def path_from_url(self, url):
        """Recover the object path from a signed URL, or None when it is not one of ours."""
        if not url:
            return None
        marker = f"{self.url_prefix}/"
        url_path = urlparse(url).path
        if marker not in url_path:
            return None
        token = url_path.split(marker, 1)[1].split('/')[0]
        try:
            data = self._serializer.loads(token)
        except BadData:
            logger.warning("[STORAGE] Could not parse object path from url, operation: path_from_url")
            return None
        return data.get('path')
