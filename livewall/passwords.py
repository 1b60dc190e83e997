"""
Event password obfuscation and event code generation.

Event passwords are XOR-ed with the event code and base64 encoded before they
are stored. This is a reversible casual access gate, not a security boundary:
anyone holding the event code and the stored value can recover the password.
Stored rows depend on this exact format, so it must stay as it is.
"""
import base64
import binascii
import logging
import secrets
import string

from livewall.errors import StoreError, ValidationError

logger = logging.getLogger(__name__)

EVENT_CODE_ALPHABET = string.ascii_uppercase + string.digits
EVENT_CODE_LENGTH = 5
MAX_CODE_ATTEMPTS = 10

ERROR_PASSWORD_CHARS = 'Passwort enthält nicht unterstützte Zeichen'


def _xor_with_code(text, event_code):
    return ''.join(
        chr(ord(char) ^ ord(event_code[i % len(event_code)]))
        for i, char in enumerate(text)
    )


def encrypt_event_password(password, event_code):
    """
    Obfuscate ``password`` with ``event_code``; returns a base64 string.

    The XOR result is stored as Latin-1 bytes, so characters beyond U+00FF
    cannot be stored.

    Raises:
        ValidationError: the password contains such a character.
    """
    if not event_code:
        raise ValueError("event_code must not be empty")
    mixed = _xor_with_code(password, event_code)
    try:
        raw = mixed.encode('latin-1')
    except UnicodeEncodeError:
        raise ValidationError(ERROR_PASSWORD_CHARS)
    return base64.b64encode(raw).decode('ascii')


def decrypt_event_password(encrypted_password, event_code):
    """Reverse :func:`encrypt_event_password`. Returns '' when undecodable."""
    if not encrypted_password or not event_code:
        return ''
    try:
        raw = base64.b64decode(encrypted_password, validate=True)
    except (binascii.Error, ValueError):
        return ''
    return _xor_with_code(raw.decode('latin-1'), event_code)


def verify_event_password(input_password, encrypted_password, event_code):
    return input_password == decrypt_event_password(encrypted_password, event_code)


# --- EVENT CODES ---
def generate_event_code():
    return ''.join(secrets.choice(EVENT_CODE_ALPHABET) for _ in range(EVENT_CODE_LENGTH))


def generate_unique_event_code(store):
    """
    Draw codes until one is not taken yet.

    Raises:
        StoreError: when every attempt collided with an existing event.
    """
    for attempt in range(MAX_CODE_ATTEMPTS):
        code = generate_event_code()
        if not store.event_code_exists(code):
            return code
        logger.info(f"[MODERATION] Event code collision - code: {code}, attempt: {attempt + 1}")
    logger.error(f"[MODERATION] Failed to generate unique event code after {MAX_CODE_ATTEMPTS} attempts")
    raise StoreError("Failed to generate unique event code after multiple attempts")
