import base64
import binascii
import gzip
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

# fields the Jenkins log producer may ship gzip+base64 encoded, flagged by "<field>_compressed"
COMPRESSED_FIELDS = ("raw_log", "content", "secrets")

_OFFSET_WITHOUT_COLON = re.compile(r"([+-])(\d{2})(\d{2})$")


def decompress_text(encoded: str) -> str:
    """Decode a GZIP-compressed, Base64-encoded string"""
    return gzip.decompress(base64.b64decode(encoded)).decode("utf-8")


def decode_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of the payload with compressed fields expanded"""
    decoded = dict(payload)
    for name in COMPRESSED_FIELDS:
        flag = f"{name}_compressed"
        value = decoded.get(name)
        if decoded.get(flag) is not True or not isinstance(value, str):
            continue
        try:
            text = decompress_text(value)
        except (binascii.Error, OSError, EOFError, UnicodeDecodeError) as e:
            logger.warning(f"Could not decode compressed field '{name}': {e}")
            decoded[f"{name}_decode_error"] = str(e)
            continue
        if name == "secrets":
            try:
                decoded[name] = json.loads(text)
            except json.JSONDecodeError:
                decoded[name] = text
        else:
            decoded[name] = text
        decoded[flag] = False
    return decoded


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 with 'Z', '+05:00' or '+0500' offsets; naive values are UTC"""
    if not value:
        return None
    normalized = _OFFSET_WITHOUT_COLON.sub(r"\1\2:\3", value.strip())
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        logger.debug(f"Failed to parse timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
