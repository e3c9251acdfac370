import base64
import hashlib

from tfbucket.server.base_state_lock_provider import ChecksumMismatchError, IncompleteBodyError


def content_md5(data: bytes) -> str:
    """Return the base64 encoded MD5 digest of `data` - the format of the `Content-MD5` header."""
    return base64.b64encode(hashlib.md5(data).digest()).decode()


def validate_checksum(data: bytes, expected_md5: str, expected_length: int) -> None:
    """Verify an uploaded body against the headers sent with it.

    Args:
        data: The bytes actually received.
        expected_md5: Base64 encoded MD5 digest declared by the caller.
        expected_length: Body length declared by the caller.

    Raises:
        IncompleteBodyError: The amount of received bytes differs from the declared length.
        ChecksumMismatchError: The digest of the received bytes differs from the declared one.
    """
    if len(data) != expected_length:
        raise IncompleteBodyError(expected=expected_length, actual=len(data))

    calculated = content_md5(data)
    if calculated != expected_md5:
        raise ChecksumMismatchError(expected=expected_md5, actual=calculated)
