"""
HTTP Digest authentication (RFC 2617) for legacy ASIC web interfaces
"""
import hashlib
import logging
import re
import secrets
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Fixed nonce count: every challenge is answered exactly once
NONCE_COUNT = "00000001"

_CHALLENGE_PARAM = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|([^\s,]+))')

_HASHES = {
    "MD5": hashlib.md5,
    "MD5-SESS": hashlib.md5,
    "SHA-256": hashlib.sha256,
    "SHA-256-SESS": hashlib.sha256,
}


def parse_digest_challenge(header: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse a WWW-Authenticate Digest challenge into its key="value" pairs.

    Returns None when realm or nonce is missing, since no usable
    response can be computed without them.
    """
    if not header:
        return None

    text = header.strip()
    if text[:6].lower() == "digest":
        text = text[6:]

    challenge = {}
    for key, quoted, bare in _CHALLENGE_PARAM.findall(text):
        challenge[key.lower()] = quoted or bare

    if not challenge.get("realm") or not challenge.get("nonce"):
        logger.debug(f"Digest challenge missing realm/nonce: {header!r}")
        return None

    return challenge


def _select_qop(qop: Optional[str]) -> Optional[str]:
    """Pick a supported quality of protection from the offered list"""
    if not qop:
        return None
    offered = [q.strip().lower() for q in qop.split(",")]
    if "auth" in offered:
        return "auth"
    return None


def build_digest_header(
    method: str,
    uri: str,
    username: str,
    password: str,
    challenge: Optional[Dict[str, str]],
    cnonce: Optional[str] = None
) -> Optional[str]:
    """
    Build the Authorization header value answering a Digest challenge.

    Args:
        method: HTTP method of the request being authorized
        uri: Request URI (path and query) exactly as sent
        username: Device username
        password: Device password
        challenge: Parsed challenge from parse_digest_challenge()
        cnonce: Client nonce; a fresh random one is generated when omitted

    Returns:
        Header string starting with "Digest ", or None if the challenge is unusable
    """
    if not challenge or not challenge.get("realm") or not challenge.get("nonce"):
        return None

    realm = challenge["realm"]
    nonce = challenge["nonce"]
    algorithm = challenge.get("algorithm", "MD5")
    hash_fn = _HASHES.get(algorithm.upper())
    if hash_fn is None:
        logger.warning(f"Unsupported digest algorithm '{algorithm}'")
        return None

    def digest(value: str) -> str:
        return hash_fn(value.encode("utf-8")).hexdigest()

    qop = _select_qop(challenge.get("qop"))
    if cnonce is None:
        cnonce = secrets.token_hex(8)

    ha1 = digest(f"{username}:{realm}:{password}")
    if algorithm.upper().endswith("-SESS"):
        ha1 = digest(f"{ha1}:{nonce}:{cnonce}")
    ha2 = digest(f"{method.upper()}:{uri}")

    if qop:
        response = digest(f"{ha1}:{nonce}:{NONCE_COUNT}:{cnonce}:{qop}:{ha2}")
    else:
        response = digest(f"{ha1}:{nonce}:{ha2}")

    parts = [
        f'username="{username}"',
        f'realm="{realm}"',
        f'nonce="{nonce}"',
        f'uri="{uri}"',
        f'algorithm="{algorithm}"',
        f'response="{response}"',
    ]
    if qop:
        parts.extend([f"qop={qop}", f"nc={NONCE_COUNT}", f'cnonce="{cnonce}"'])
    if challenge.get("opaque"):
        parts.append(f'opaque="{challenge["opaque"]}"')

    return "Digest " + ", ".join(parts)
