"""
Learner Chat — Origin Address
Sessions are bound to the address they were created from. Behind the proxy the
client address is the first X-Forwarded-For entry.
"""

from typing import Mapping, Optional


def extract_origin(headers: Mapping[str, str], peer_host: Optional[str]) -> str:
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer_host or "unknown"
