"""Encryption primitives for datasources and images.

Key hierarchy
-------------
A random 256-bit *data key* encrypts the datasource record and every image.
The data key itself is stored encrypted with a *password key* derived from
the user's password with Argon2id.  Changing the password only rewraps the
data key; rotating the data key re-encrypts everything on the next save.

Image layout
------------
Thumbnail pools are PNG and full images are WebP.  Both keep their leading
container header in clear so the files still look like images of the same
format: 33 bytes for PNG (signature plus the IHDR chunk, which leaks size,
bit depth and colour type) and 12 bytes for WebP (``RIFF``, file size and
``WEBP``, which leaks nothing beyond the file size).  The remaining bytes are
encrypted with a fresh nonce that is written right after the header::

    header || nonce || ciphertext
"""
from __future__ import annotations

import json
import logging
import os
from typing import Optional, Tuple, Union

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from . import config
from .errors import AuthenticationFailure, ImageCodecFailure, ParseError, QuotaExceeded
from .serialization import Argon2Parameters, Datasource, EncryptedDatasource, RuntimeProtection
from .utils.imaging import ImageFormatSpecification

LOGGER = logging.getLogger(__name__)


def random_bytes(length: int) -> bytes:
    """Return ``length`` cryptographically secure random bytes."""
    return os.urandom(length)


def new_argon2_parameters(
    *,
    time_cost: int = config.ARGON2_TIME_COST,
    memory_cost: int = config.ARGON2_MEMORY_COST,
    parallelism: int = config.ARGON2_PARALLELISM,
) -> Argon2Parameters:
    """Return Argon2 parameters with a fresh random salt."""
    return Argon2Parameters(
        salt=random_bytes(config.ARGON2_SALT_LENGTH),
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
    )


def derive_key(password: Union[str, bytes], params: Argon2Parameters) -> bytes:
    """Derive a symmetric key from ``password`` with Argon2id."""
    secret = password.encode("utf-8") if isinstance(password, str) else password
    return hash_secret_raw(
        secret,
        params.salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=config.KEY_LENGTH,
        type=Type.ID,
    )


def aead_encrypt(key: bytes, plaintext: Union[str, bytes]) -> Tuple[bytes, bytes]:
    """Encrypt ``plaintext`` with AES-GCM under a fresh random nonce.

    Returns ``(ciphertext, nonce)``.
    """
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
    nonce = random_bytes(config.NONCE_LENGTH)
    return AESGCM(key).encrypt(nonce, data, None), nonce


def aead_decrypt(key: bytes, ciphertext: bytes, nonce: bytes) -> bytes:
    """Decrypt and authenticate ``ciphertext``.

    Raises :class:`AuthenticationFailure` for a wrong key or corrupted data.
    """
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise AuthenticationFailure("Decryption failed", "wrong key or corrupted data") from exc
    except ValueError as exc:
        raise AuthenticationFailure("Decryption failed", str(exc)) from exc


def encrypt_image(image: bytes, spec: ImageFormatSpecification, key: bytes) -> bytes:
    """Encrypt everything after the format header of ``image``."""
    if len(image) < spec.header_length:
        raise ImageCodecFailure(
            "Image is shorter than its format header",
            f"{len(image)} < {spec.header_length} bytes",
        )
    header = image[: spec.header_length]
    ciphertext, nonce = aead_encrypt(key, image[spec.header_length:])
    return bytes(header) + nonce + ciphertext


def decrypt_image(encrypted: bytes, spec: ImageFormatSpecification, key: bytes) -> bytes:
    """Inverse of :func:`encrypt_image`."""
    body_start = spec.header_length + config.NONCE_LENGTH
    if len(encrypted) < body_start:
        raise AuthenticationFailure("Decryption failed", "encrypted image is truncated")
    header = encrypted[: spec.header_length]
    nonce = encrypted[spec.header_length:body_start]
    return bytes(header) + aead_decrypt(key, encrypted[body_start:], nonce)


def encrypt_datasource(
    datasource: Datasource,
    key: bytes,
    *,
    encrypted_counter: Optional[int] = None,
) -> str:
    """Encrypt ``datasource`` and return the persisted JSON text.

    The quota is checked against the counter held by ``datasource``; callers
    must trigger a re-key before this limit is hit.  ``encrypted_counter``
    overrides the counter value written into the record.  This function does
    not update the counter itself.
    """
    if datasource.encrypted_counter >= config.ENCRYPT_MESSAGE_LIMIT:
        raise QuotaExceeded(
            "Data key reached its encryption limit",
            f"{datasource.encrypted_counter} >= {config.ENCRYPT_MESSAGE_LIMIT}",
        )
    internals = json.dumps(
        datasource.to_payload(encrypted_counter=encrypted_counter),
        separators=(",", ":"),
    )
    ciphertext, nonce = aead_encrypt(key, internals)
    protection = datasource.runtime
    encrypted = EncryptedDatasource(
        encrypted_key=protection.encrypted_key,
        key_nonce=protection.key_nonce,
        data_nonce=nonce,
        argon2=protection.argon2,
        internals=ciphertext,
    )
    return json.dumps(encrypted.to_payload())


def load_encrypted_datasource(text: Union[str, bytes]) -> EncryptedDatasource:
    """Parse the persisted JSON text of a datasource."""
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ParseError("Cannot parse JSON", str(exc)) from exc
    if not isinstance(payload, dict):
        raise ParseError("Invalid data format", "the top-level must be an object")
    return EncryptedDatasource.from_payload(payload)


def unlock_data_key(encrypted: EncryptedDatasource, password: Union[str, bytes]) -> bytes:
    """Derive the password key and unwrap the data key."""
    password_key = derive_key(password, encrypted.argon2)
    return aead_decrypt(password_key, encrypted.encrypted_key, encrypted.key_nonce)


def decrypt_datasource(encrypted: EncryptedDatasource, key: bytes) -> Datasource:
    """Decrypt the record of ``encrypted`` with the unwrapped data key."""
    plaintext = aead_decrypt(key, encrypted.internals, encrypted.data_nonce)
    runtime = RuntimeProtection(
        key=key,
        encrypted_key=encrypted.encrypted_key,
        key_nonce=encrypted.key_nonce,
        argon2=encrypted.argon2,
    )
    try:
        payload = json.loads(plaintext)
        return Datasource.from_payload(payload, runtime)
    except ParseError:
        raise
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError, ValueError, AttributeError) as exc:
        raise ParseError("Malformed datasource payload", str(exc)) from exc


def open_datasource(text: Union[str, bytes], password: Union[str, bytes]) -> Datasource:
    """Parse, unlock and decrypt a persisted datasource in one step."""
    encrypted = load_encrypted_datasource(text)
    key = unlock_data_key(encrypted, password)
    LOGGER.info("Data key unlocked")
    return decrypt_datasource(encrypted, key)


def wrap_data_key(
    key: bytes,
    password: Union[str, bytes],
    params: Optional[Argon2Parameters] = None,
) -> RuntimeProtection:
    """Encrypt ``key`` with a password key derived from ``password``."""
    params = params or new_argon2_parameters()
    encrypted_key, key_nonce = aead_encrypt(derive_key(password, params), key)
    return RuntimeProtection(key=key, encrypted_key=encrypted_key, key_nonce=key_nonce, argon2=params)


def create_protection(
    password: Union[str, bytes],
    params: Optional[Argon2Parameters] = None,
) -> RuntimeProtection:
    """Generate a fresh data key protected by ``password``."""
    return wrap_data_key(random_bytes(config.KEY_LENGTH), password, params)


def regenerate_data_key(
    password: Union[str, bytes],
    params: Argon2Parameters,
) -> RuntimeProtection:
    """Generate a replacement data key wrapped with the existing password.

    The result feeds :meth:`tagvault.controllers.DatabaseStore.update_data_key`.
    """
    LOGGER.info("Regenerating data key")
    return create_protection(password, params)
