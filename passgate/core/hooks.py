import logging
from typing import Callable, Dict, List, Any, Awaitable

logger = logging.getLogger(__name__)


class HookManager:
    """
    Manages registration and execution of asynchronous hooks.

    Two kinds of hooks exist:
    - event hooks, notified after something happened; failures are logged and never
      change the outcome of the ceremony.
    - guards, run by the gateway before any cryptographic work (rate limiting,
      CSRF / origin screening). A guard rejects a request by raising, usually
      RateLimitError; the exception propagates to the caller.
    """

    def __init__(self):
        self._hooks: Dict[str, List[Callable[..., Awaitable[Any]]]] = {}
        self._guards: List[Callable[..., Awaitable[Any]]] = []

    def on(self, event_name: str):
        """Decorator to register a hook for an event."""
        def decorator(func: Callable[..., Awaitable[Any]]):
            self.register(event_name, func)
            return func
        return decorator

    def register(self, event_name: str, func: Callable[..., Awaitable[Any]]):
        """Register a function as a hook for an event."""
        self._hooks.setdefault(event_name, []).append(func)
        logger.debug(f"Registered hook '{func.__name__}' for event '{event_name}'")

    def guard(self, func: Callable[..., Awaitable[Any]]):
        """Decorator / function to register a ceremony guard."""
        self._guards.append(func)
        logger.debug(f"Registered ceremony guard '{func.__name__}'")
        return func

    def clear(self):
        self._hooks.clear()
        self._guards.clear()

    async def run_guards(self, request, ceremony: str, stage: str):
        """
        Runs every guard with the incoming request. `ceremony` is "registration" or
        "authentication", `stage` is "begin" or "finish".
        """
        for guard in self._guards:
            await guard(request=request, ceremony=ceremony, stage=stage)

    async def trigger(self, event_name: str, **kwargs):
        """
        Trigger all hooks for an event sequentially. Hook failures are logged.
        """
        hooks = self._hooks.get(event_name, [])
        if not hooks:
            return

        logger.debug(f"Triggering {len(hooks)} hooks for event '{event_name}'")
        for hook in hooks:
            try:
                await hook(**kwargs)
            except Exception as e:
                logger.error(f"Error executing hook '{hook.__name__}' for event '{event_name}': {e}", exc_info=True)


# Standard Event Names
class Events:
    PASSKEY_REGISTERED = "passkey_registered"
    PASSKEY_AUTHENTICATED = "passkey_authenticated"
    PASSKEY_CEREMONY_FAILED = "passkey_ceremony_failed"
    COUNTER_REGRESSION = "counter_regression"
    PASSKEY_DISABLED = "passkey_disabled"
    PASSKEY_DELETED = "passkey_deleted"


hook_manager = HookManager()
