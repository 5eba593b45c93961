import hashlib
import logging
import os

TELEMETRY_SALT = os.getenv("TELEMETRY_SALT", "plan-relay-default-salt")


def hash_address(address: str | None) -> str:
    if not address:
        return "unknown"
    return hashlib.sha256((TELEMETRY_SALT + address.lower()).encode()).hexdigest()[:16]


def short_hex(value: str | None, keep: int = 10) -> str:
    if not value:
        return ""
    return value if len(value) <= keep else value[:keep] + "..."


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
