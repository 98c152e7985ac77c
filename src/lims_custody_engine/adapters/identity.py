"""Identity Provider adapters.

ContextIdentityProvider reads the acting user from a context variable that
the HTTP layer binds per request (from the X-Actor-* headers set by the
authenticating gateway). StaticIdentityProvider always returns one fixed
actor, or nobody.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from lims_custody_engine.core.models import Actor

_current_actor: ContextVar[Actor | None] = ContextVar("lims_custody_current_actor", default=None)


def set_current_actor(actor: Actor | None) -> None:
    """Bind ``actor`` for the rest of the current task (one HTTP request)."""
    _current_actor.set(actor)


@contextmanager
def bind_actor(actor: Actor | None) -> Iterator[None]:
    """Bind ``actor`` as the current actor for the enclosed block."""
    token = _current_actor.set(actor)
    try:
        yield
    finally:
        _current_actor.reset(token)


class ContextIdentityProvider:
    """Returns the actor bound to the current task context."""

    async def current_actor(self) -> Actor | None:
        return _current_actor.get()


class StaticIdentityProvider:
    """Returns a fixed actor. Pass None to model an unauthenticated caller."""

    def __init__(self, actor: Actor | None) -> None:
        """Initialize with the actor to report."""
        self._actor = actor

    async def current_actor(self) -> Actor | None:
        return self._actor
