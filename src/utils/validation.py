import re

_BRACKETED_TOKEN = re.compile(r"^(?:ExponentPushToken|ExpoPushToken)\[[^\[\]\s]+\]$")
_UUID_TOKEN = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def is_valid_push_token(token: object) -> bool:
    if not isinstance(token, str):
        return False
    return bool(_BRACKETED_TOKEN.match(token) or _UUID_TOKEN.match(token))
