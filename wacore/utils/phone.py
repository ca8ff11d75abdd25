from __future__ import annotations

USER_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"

# Prefixes treated as already carrying a country code
_KNOWN_COUNTRY_PREFIXES = ("880", "1", "44")
DEFAULT_COUNTRY_CODE = "880"


def digits_only(number: str | None) -> str | None:
    """Return only digits from the input, or None if empty/None."""
    if not number:
        return None
    d = "".join(ch for ch in number if ch.isdigit())
    return d or None


def format_whatsapp_id(number: str | None) -> str | None:
    """Return the provider chat id (``<digits>@c.us``) for a phone number.

    Country-code heuristic: numbers starting with 880, 1 or 44 are kept as-is.
    Anything else is assumed to be a Bangladesh number; an 11-digit local
    number with a leading ``01`` drops its trunk zero before the 880 prefix.
    This is not an E.164 parser. Returns None when the input has no digits.
    """
    digits = digits_only(number)
    if not digits:
        return None
    if not digits.startswith(_KNOWN_COUNTRY_PREFIXES):
        if len(digits) == 11 and digits.startswith("01"):
            digits = DEFAULT_COUNTRY_CODE + digits[1:]
        else:
            digits = DEFAULT_COUNTRY_CODE + digits
    return digits + USER_SUFFIX


def to_chat_id(address: str) -> str:
    """Qualify a bare address with the user suffix, leaving chat ids untouched."""
    if address.endswith(USER_SUFFIX) or address.endswith(GROUP_SUFFIX):
        return address
    return address + USER_SUFFIX


def is_group(chat_id: str | None) -> bool:
    return bool(chat_id) and chat_id.endswith(GROUP_SUFFIX)  # type: ignore[union-attr]
