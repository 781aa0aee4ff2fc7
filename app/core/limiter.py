from slowapi import Limiter

from app.features.users.dependencies import get_authorization_header

# Keyed by bearer token so each caller is limited separately
limiter = Limiter(key_func=get_authorization_header)
