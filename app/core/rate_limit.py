# app/core/rate_limit.py
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.settings import settings

# 1 gedeelde Limiter voor de hele app.
# De mobiele upload is niet ingelogd, dus we sleutelen op IP + session token.
limiter = Limiter(
    key_func=lambda req: f"{get_remote_address(req)}:{req.path_params.get('token', 'anon')}",
    enabled=settings.RATE_LIMIT_ENABLED,
)
