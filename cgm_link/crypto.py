"""
Key derivation, payload decryption and CRC validation for sensor traffic.

Every function here is pure. Decryption never raises: when the cipher
cannot be set up or fails, the input is returned unchanged and downstream
quality filtering is expected to reject whatever garbage results.

The derivation table and the session-key mixing function are compatibility
constructions, not vetted cryptography. They must be reproduced exactly
to talk to the sensors and should not be reused for anything else.
"""

import logging

from Crypto.Cipher import AES

from .constants import (
    AES_BLOCK_SIZE,
    CRC16_FINAL_XOR,
    CRC16_POLYNOMIAL,
    CRC16_SEED,
    GEN2_CLEAR_HEADER_SIZE,
    GEN2_UNLOCK_KEY_PREFIX,
    GEN3_KEY_SALT,
    GEN3_SESSION_KEY_SIZE,
    KEY_DERIVATION_TABLE,
    MIN_PATCH_INFO_SIZE,
    UNLOCK_KEY_DERIVED_SIZE,
)
from .exceptions import CryptoFailureError

logger = logging.getLogger(__name__)


# =============================================================================
# Generation-2 Key Material
# =============================================================================

def derive_unlock_key(patch_info: bytes) -> bytes:
    """
    Derive the generation-2 unlock key from sensor patch info.

    Args:
        patch_info: Patch info read out-of-band (NFC) from the sensor

    Returns:
        11-byte unlock key (3-byte prefix + 8 derived bytes), or empty
        bytes when patch info is shorter than 6 bytes
    """
    if len(patch_info) < MIN_PATCH_INFO_SIZE:
        logger.warning(
            "Patch info too short for key generation",
            extra={"patch_info_size": len(patch_info)},
        )
        return b""

    derived = bytes(
        patch_info[i % len(patch_info)] ^ KEY_DERIVATION_TABLE[i]
        for i in range(UNLOCK_KEY_DERIVED_SIZE)
    )
    return GEN2_UNLOCK_KEY_PREFIX + derived


def _derive_aes_key(patch_info: bytes) -> bytes:
    """AES key: patch info bytes 0..15 XOR table, missing bytes read as zero."""
    return bytes(
        (patch_info[i] if i < len(patch_info) else 0) ^ KEY_DERIVATION_TABLE[i]
        for i in range(AES_BLOCK_SIZE)
    )


def _derive_iv(patch_info: bytes) -> bytes:
    """IV: patch info from byte 8 onwards (cyclic) XOR the table rotated by 8."""
    size = len(patch_info)
    return bytes(
        patch_info[(i + 8) % size] ^ KEY_DERIVATION_TABLE[(i + 8) % AES_BLOCK_SIZE]
        for i in range(AES_BLOCK_SIZE)
    )


# =============================================================================
# Decryption
# =============================================================================

def decrypt_gen2(data: bytes, patch_info: bytes) -> bytes:
    """
    Decrypt a generation-2 response with AES/CBC.

    The first 8 bytes are a clear header and are copied verbatim. The
    block-aligned part of the remainder is decrypted; a tail shorter than
    one block is copied through as-is.

    Args:
        data: Response bytes as received from the sensor
        patch_info: Sensor patch info used to derive key and IV

    Returns:
        Decrypted bytes of the same length as ``data``, or ``data``
        unchanged when it is shorter than a block or decryption fails
    """
    if len(data) < AES_BLOCK_SIZE:
        return data

    if not patch_info:
        logger.error("Generation-2 decryption skipped: no patch info")
        return data

    header = data[:GEN2_CLEAR_HEADER_SIZE]
    encrypted = data[GEN2_CLEAR_HEADER_SIZE:]
    if len(encrypted) < AES_BLOCK_SIZE:
        return data

    aligned = (len(encrypted) // AES_BLOCK_SIZE) * AES_BLOCK_SIZE

    try:
        cipher = AES.new(_derive_aes_key(patch_info), AES.MODE_CBC, iv=_derive_iv(patch_info))
        decrypted = cipher.decrypt(encrypted[:aligned])
    except (ValueError, TypeError) as e:
        error = CryptoFailureError("Generation-2 decryption failed", original_error=e)
        logger.error(error.full_message, extra={"data_size": len(data)}, exc_info=True)
        return data

    # TODO: confirm against a captured trace whether the unaligned tail is really sent in clear
    return bytes(header) + decrypted + bytes(encrypted[aligned:])


def decrypt_gen3(data: bytes, session_key: bytes) -> bytes:
    """
    Decrypt a generation-3 payload with AES/CTR.

    The first block of ``data`` is the initial counter; the rest is
    ciphertext. Only the plaintext of the ciphertext part is returned.

    Args:
        data: Counter block followed by ciphertext
        session_key: Session key; its first 16 bytes are the AES key

    Returns:
        Decrypted payload, or ``data`` unchanged when either input is
        shorter than a block or decryption fails
    """
    if len(data) < AES_BLOCK_SIZE or len(session_key) < AES_BLOCK_SIZE:
        return data

    try:
        cipher = AES.new(
            bytes(session_key[:AES_BLOCK_SIZE]),
            AES.MODE_CTR,
            nonce=b"",
            initial_value=bytes(data[:AES_BLOCK_SIZE]),
        )
        return cipher.decrypt(bytes(data[AES_BLOCK_SIZE:]))
    except (ValueError, TypeError) as e:
        error = CryptoFailureError("Generation-3 decryption failed", original_error=e)
        logger.error(error.full_message, extra={"data_size": len(data)}, exc_info=True)
        return data


# =============================================================================
# Generation-3 Session Key
# =============================================================================

def derive_gen3_session_key(device_info: bytes, sensor_random: bytes) -> bytes:
    """
    Derive the generation-3 session key.

    ``device_info || sensor_random || salt`` is folded into 16 bytes by
    XOR, then each byte is mixed into its successor with a right shift.

    Args:
        device_info: Locally generated device identifier
        sensor_random: Random bytes taken from the sensor's challenge

    Returns:
        16-byte session key; identical inputs always give the same key
    """
    combined = bytes(device_info) + bytes(sensor_random) + GEN3_KEY_SALT

    result = bytearray(GEN3_SESSION_KEY_SIZE)
    for i, byte in enumerate(combined):
        result[i % GEN3_SESSION_KEY_SIZE] ^= byte

    for i in range(GEN3_SESSION_KEY_SIZE):
        nxt = (i + 1) % GEN3_SESSION_KEY_SIZE
        result[nxt] ^= result[i] >> 3

    return bytes(result)


# =============================================================================
# CRC-16
# =============================================================================

def crc16(data: bytes) -> int:
    """Bit-reversed CCITT CRC-16 (poly 0x8408, seed 0xFFFF, final XOR 0xFFFF)."""
    crc = CRC16_SEED
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ CRC16_POLYNOMIAL
            else:
                crc >>= 1
    return crc ^ CRC16_FINAL_XOR


def verify_crc16(data: bytes, expected: int) -> bool:
    """Check ``data`` against an expected CRC-16."""
    return crc16(data) == expected
