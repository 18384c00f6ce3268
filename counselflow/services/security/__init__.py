from counselflow.services.security.csrf import issue_csrf_token, verify_csrf_token
from counselflow.services.security.sanitizer import sanitize_text

__all__ = [
    "issue_csrf_token",
    "sanitize_text",
    "verify_csrf_token",
]
