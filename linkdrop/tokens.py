import re
import secrets

TOKEN_BYTES = 10
TOKEN_PATTERN = re.compile(rf"^[a-f0-9]{{{TOKEN_BYTES * 2}}}$")


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def is_valid_token(value: str) -> bool:
    return bool(TOKEN_PATTERN.fullmatch(value or ""))


def mask_token(token: str) -> str:
    """Tokens are credentials; logs only ever carry a prefix."""
    return f"{token[:6]}..." if token else "-"
