"""Checksum utilities for card files."""

import zlib

CRC16_POLYNOMIAL = 0x1021
CRC16_INIT = 0xFFFF


def calculate_crc16(data: bytes) -> int:
    """
    Calculate CRC16-CCITT (FALSE variant) checksum.

    Polynomial 0x1021, initial value 0xFFFF, no reflection, no final XOR.

    Args:
        data: Data to checksum

    Returns:
        16-bit CRC value
    """
    crc = CRC16_INIT
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ CRC16_POLYNOMIAL) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def verify_crc16(data: bytes, expected: int) -> bool:
    """Verify a CRC16-CCITT checksum."""
    return calculate_crc16(data) == (expected & 0xFFFF)


def calculate_crc32(data: bytes) -> int:
    """
    Calculate CRC32 (ISO-HDLC) checksum.

    Reflected polynomial 0xEDB88320 with 0xFFFFFFFF init and final XOR,
    which is what zlib implements.

    Args:
        data: Data to checksum

    Returns:
        32-bit CRC value
    """
    return zlib.crc32(data) & 0xFFFFFFFF


def verify_crc32(data: bytes, expected: int) -> bool:
    """Verify a CRC32 checksum."""
    return calculate_crc32(data) == (expected & 0xFFFFFFFF)
