from .auth import issue_token, require_admin

__all__ = ["issue_token", "require_admin"]
