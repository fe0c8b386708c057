from typing import Any, Callable, Iterable, Mapping

from nextcloud_sync.runtime_logger import emit


ENTITY_CHANGES = ("insert", "update", "delete")


class EntityHookDispatcher:
    """Fans entity lifecycle events out to the registered tracker callbacks.

    Callbacks may report further entity changes, which re-enters the
    dispatcher. Nesting deeper than max_depth is treated as a runaway loop.
    """

    def __init__(self, callbacks: Mapping[str, Iterable[Callable]], max_depth: int = 10):
        self._callbacks = {kind: list(items) for kind, items in callbacks.items()}
        self._max_depth = max_depth
        self._stack: list[str] = []

    def kinds(self) -> list[str]:
        return sorted(self._callbacks)

    def on_entity_changed(self, kind: str, entity: Mapping[str, Any], change: str) -> int:
        """Returns the number of callbacks that were called."""
        if change not in ENTITY_CHANGES:
            raise ValueError(f"Unexpected entity change '{change}'.")
        callbacks = self._callbacks.get(kind)
        if not callbacks:
            return 0
        label = f"{kind}:{change}"
        if len(self._stack) >= self._max_depth:
            chain = " > ".join([*self._stack, label])
            emit("ERROR", "TRACKING", f"Entity hook recursion limit reached: depth={len(self._stack)} chain={chain}")
            raise RuntimeError(f"Entity hook recursion exceeded {self._max_depth} levels: {chain}")
        self._stack.append(label)
        try:
            for callback in callbacks:
                callback(entity, change)
        finally:
            self._stack.pop()
        return len(callbacks)
