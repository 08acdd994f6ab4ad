"""
Element discovery and the consumer binding surface.

The orchestrator never finds images itself. It is handed an ElementDiscovery
that reports the elements already present and emits "added" and "changed"
events for new elements and changed references. Each element is bound to a
handle and tells the orchestrator, through the on_done callback, when it no
longer needs it.

ElementWatcher and SimpleImageElement are in-process implementations used
by the CLI and the tests; a page integration would provide its own.
"""

from __future__ import annotations

from typing import Callable, Iterable, Protocol

from imgcache.exceptions import InvalidInputError

EVENTS = ("added", "changed")


class ImageElement(Protocol):
    """A consumer that references an image by URL."""

    src: str

    def bind(self, handle: str, on_done: Callable[[], None]) -> None:
        """Point the element at handle; call on_done once it has loaded.

        Binding again, or changing src, before the load finishes must still
        call the previous on_done, otherwise its handle is never released.
        """
        ...


ElementsCallback = Callable[[list[ImageElement]], None]


class ElementDiscovery(Protocol):
    """Source of image elements."""

    def existing(self) -> list[ImageElement]: ...

    def on(self, event: str, callback: ElementsCallback) -> None: ...

    def off(self, event: str, callback: ElementsCallback) -> None: ...


class SimpleImageElement:
    """Plain image consumer.

    Holds its current reference in `src`. After bind(), the owner calls
    loaded() once the bytes behind the handle have been consumed.
    """

    def __init__(self, src: str) -> None:
        self.src = src
        self.original_src = src
        self._on_done: Callable[[], None] | None = None

    def __repr__(self) -> str:
        return f"SimpleImageElement(src={self.src!r})"

    @property
    def bound(self) -> bool:
        return self.src != self.original_src

    def bind(self, handle: str, on_done: Callable[[], None]) -> None:
        # A handle replaced before it loaded is done with all the same
        self.loaded()
        self.src = handle
        self._on_done = on_done

    def loaded(self) -> None:
        """Signal load completion. Only the first signal after a bind counts."""
        on_done, self._on_done = self._on_done, None
        if on_done is not None:
            on_done()


class ElementWatcher:
    """Tracks a set of elements and emits events when it changes."""

    def __init__(self, elements: Iterable[ImageElement] = ()) -> None:
        self._elements: list[ImageElement] = list(elements)
        self._subscribers: dict[str, list[ElementsCallback]] = {event: [] for event in EVENTS}

    def __len__(self) -> int:
        return len(self._elements)

    def existing(self) -> list[ImageElement]:
        return list(self._elements)

    def on(self, event: str, callback: ElementsCallback) -> None:
        self._check_event(event)
        self._subscribers[event].append(callback)

    def off(self, event: str, callback: ElementsCallback) -> None:
        self._check_event(event)
        if callback in self._subscribers[event]:
            self._subscribers[event].remove(callback)

    def add(self, *elements: ImageElement) -> None:
        """Start tracking elements and emit "added"."""
        self._elements.extend(elements)
        self._emit("added", list(elements))

    def set_src(self, element: ImageElement, src: str) -> None:
        """Change an element's reference and emit "changed"."""
        if isinstance(element, SimpleImageElement):
            element.loaded()
            element.original_src = src
        element.src = src
        self._emit("changed", [element])

    def remove(self, element: ImageElement) -> None:
        if element in self._elements:
            self._elements.remove(element)

    def _emit(self, event: str, elements: list[ImageElement]) -> None:
        for callback in list(self._subscribers[event]):
            callback(elements)

    @staticmethod
    def _check_event(event: str) -> None:
        if event not in EVENTS:
            raise InvalidInputError("Unknown element event", {"event": event})
