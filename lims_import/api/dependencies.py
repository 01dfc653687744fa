from fastapi import Header


def get_user_id(x_user_id: str = Header(default="system", alias="X-User-Id")) -> str:
    """Caller identity; authentication happens upstream of this service."""
    return x_user_id.strip() or "system"
