"""Utility functions for BLE operations."""

import asyncio
import base64
import binascii
import time
from typing import Optional, Union

from watersensor.ble.constants import ERROR_TIMEOUT
from watersensor.ble.exceptions import TransportTimeout


def _sleep(delay: float) -> None:
    """
    Pause execution for the given number of seconds.

    Parameters:
        delay (float): Number of seconds to sleep; may be fractional.
    """
    time.sleep(delay)


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _with_timeout(awaitable, timeout: Optional[float], label: str):
    """
    Wait for the given awaitable to complete, enforcing an optional timeout.

    Parameters:
        awaitable: An awaitable or coroutine to wait on.
        timeout (float | None): Timeout in seconds; if None, wait indefinitely.
        label (str): Label used in the timeout error message.

    Returns:
        The result produced by the awaitable.

    Raises:
        TransportTimeout: If the awaitable does not complete before the specified timeout.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransportTimeout(ERROR_TIMEOUT.format(label, timeout)) from exc


def decode_payload(payload: Union[bytes, bytearray, memoryview, str, None]) -> str:
    """
    Turn one notification or read payload into text.

    Byte payloads (what bleak delivers) are decoded as UTF-8 with undecodable
    bytes replaced. Text payloads are treated as base64, the way some platform
    stacks hand characteristic values over; text that is not valid base64 is
    returned unchanged.

    Returns:
        str: The decoded text; empty for an empty or missing payload.
    """
    if payload is None:
        return ""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload).decode("utf-8", errors="replace")
    if not payload:
        return ""
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return payload
    return raw.decode("utf-8", errors="replace")


def sanitize_address(address: Optional[str]) -> Optional[str]:
    """
    Normalize a BLE address by removing common separators and lowercasing the result.

    Parameters:
        address (Optional[str]): BLE address or identifier; may be None or only whitespace.

    Returns:
        Optional[str]: The address with "-", "_", ":", and spaces removed and converted to lowercase,
        or `None` if `address` is None or contains only whitespace.
    """
    if address is None or not address.strip():
        return None
    return (
        address.strip()
        .replace("-", "")
        .replace("_", "")
        .replace(":", "")
        .replace(" ", "")
        .lower()
    )
