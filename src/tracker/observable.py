from typing import Callable, Generic, List, TypeVar

T = TypeVar("T")

Listener = Callable[[T], None]


class Observable(Generic[T]):
    """Minimal subscribe/notify store.

    Listeners receive the new value after every change and are called in
    subscription order on the event loop thread.
    """

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, value: T) -> None:
        for listener in list(self._listeners):
            listener(value)

    def publish(self, value: T) -> None:
        """Notify listeners from the owning object when used by composition."""
        self._notify(value)
