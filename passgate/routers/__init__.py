from .passkey import passkey_router

__all__ = ["passkey_router"]
