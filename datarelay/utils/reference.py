import secrets
import string
import time
from typing import Callable, Optional


REFERENCE_MIN_LENGTH = 6
REFERENCE_MAX_LENGTH = 25

_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def is_valid_reference(reference: str) -> bool:
    text = str(reference or "")
    if not (REFERENCE_MIN_LENGTH <= len(text) <= REFERENCE_MAX_LENGTH):
        return False
    return all(ch.isalnum() or ch in "_-" for ch in text)


def generate_reference(
    prefix: str,
    *,
    exists: Optional[Callable[[str], bool]] = None,
    now: Optional[float] = None,
    attempts: int = 5,
) -> str:
    """Return ``{PREFIX}_{base36 seconds}_{hex}`` within the provider's length limits."""
    clean_prefix = "".join(ch for ch in str(prefix or "").upper() if ch.isalnum() or ch == "_").strip("_") or "TX"
    stamp = _base36(int(now if now is not None else time.time()))
    head = f"{clean_prefix}_{stamp}_"
    room = REFERENCE_MAX_LENGTH - len(head)
    if room < 4:
        # Prefix too long to fit; keep the random part intact.
        head = f"{clean_prefix[: max(1, REFERENCE_MAX_LENGTH - len(stamp) - 10)]}_{stamp}_"
        room = REFERENCE_MAX_LENGTH - len(head)
    hex_len = min(room, 8)

    for _ in range(max(1, attempts)):
        reference = head + secrets.token_hex(4)[:hex_len]
        if exists is None or not exists(reference):
            return reference
    raise RuntimeError("Unable to generate a unique transaction reference")
