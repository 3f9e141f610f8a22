from __future__ import annotations

from types import TracebackType
from typing import Callable

from rundk.log import LOGGER

CleanupAction = Callable[[], None]


class CleanupStack:
    """Deferred release actions, run once each in the order they were registered."""

    def __init__(self) -> None:
        self._actions: list[CleanupAction] = []
        self._closed = False

    def register(self, action: CleanupAction) -> CleanupAction:
        if self._closed:
            raise RuntimeError("Cleanup stack already closed")
        self._actions.append(action)
        return action

    def close(self) -> list[BaseException]:
        """Run every action, even past failures and interrupts.

        Failures are logged and returned. An interrupt (``KeyboardInterrupt``,
        ``SystemExit``) raised by an action is re-raised once every remaining
        action has run.
        """
        if self._closed:
            return []
        self._closed = True
        failures: list[BaseException] = []
        interrupt: BaseException | None = None
        actions, self._actions = self._actions, []
        for action in actions:
            try:
                action()
            except Exception as exc:
                LOGGER.warning("Cleanup step failed: %s", exc)
                failures.append(exc)
            except BaseException as exc:
                LOGGER.warning("Cleanup step interrupted: %r; running remaining cleanups", exc)
                if interrupt is None:
                    interrupt = exc
        if interrupt is not None:
            raise interrupt
        return failures

    def __enter__(self) -> CleanupStack:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
