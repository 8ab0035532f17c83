from typing import Optional, Tuple

from fastapi import Request


def extract_client_info(request: Request) -> Tuple[Optional[str], str]:
    """Caller IP and User-Agent for the audit trail, proxy headers first."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip()
    elif request.headers.get("x-real-ip"):
        client_ip = request.headers["x-real-ip"].strip()
    else:
        client_ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent", "unknown")
    return client_ip, user_agent
