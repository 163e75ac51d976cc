"""
Mint a development caller token for the Drive Link API.

Usage:
  python scripts/issue_token.py <uid> [--hours 24]

The token is signed with JWT_SECRET from .env / the environment and can be
sent as "Authorization: Bearer <token>".
"""

import argparse
import os
import sys
from datetime import datetime, timedelta, timezone

from jose import jwt

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings  # noqa: E402


def issue_token(uid: str, hours: float = 24.0) -> str:
    now = datetime.now(timezone.utc)
    claims = {"sub": uid, "iat": now, "exp": now + timedelta(hours=hours)}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def main():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("uid", help="user id to put in the 'sub' claim")
    parser.add_argument("--hours", type=float, default=24.0, help="token lifetime (default 24h)")
    args = parser.parse_args()

    print(issue_token(args.uid, args.hours))


if __name__ == "__main__":
    main()
