import hmac
from typing import Optional

from fastapi import Request

# Width of the ip_address columns
MAX_IP_LENGTH = 45

# =========================
# BEARER TOKEN EXTRACTION
# =========================

def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Extract the token from an `Authorization: Bearer <token>` header.
    Returns None when the header is absent, uses another scheme or is empty.
    """
    if not authorization:
        return None

    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None


# =========================
# COMPARISON
# =========================

def token_matches(token: Optional[str], expected: str) -> bool:
    """
    Exact equality against the shared secret.
    An empty configured secret matches nothing.
    """
    if not token or not expected:
        return False

    return hmac.compare_digest(token.encode(), expected.encode())


# =========================
# CLIENT IP
# =========================

def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop[:MAX_IP_LENGTH]

    host = request.client.host if request.client else "unknown"
    return host[:MAX_IP_LENGTH]
