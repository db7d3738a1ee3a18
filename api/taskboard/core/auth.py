import hashlib
import secrets
from dataclasses import dataclass

API_KEY_PREFIX = "ab_"
DISPLAY_KEY_LENGTH = 8


@dataclass(slots=True)
class Principal:
    key_id: str
    api_key: str

    @property
    def display_name(self) -> str:
        """Truncated key used as the default poster/agent identity."""
        return f"{self.api_key[:DISPLAY_KEY_LENGTH]}..."

    def identity(self, explicit: str | None) -> str:
        if explicit and explicit.strip():
            return explicit.strip()
        return self.display_name


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(24)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()
