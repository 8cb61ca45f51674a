"""
Propiedad de los buffers intermedios de una invocación del pipeline.

Cada invocación abre un `scope()`; todo lo registrado con `track()` se libera
una sola vez al salir del bloque `with`, también cuando hay excepción.
Los contadores permiten comprobar en tests que no quedan buffers vivos.
"""
import threading
from contextlib import contextmanager
from typing import Iterator, List, TypeVar

T = TypeVar("T")


class BufferScope:
    def __init__(self, tracker: "BufferTracker") -> None:
        self._tracker = tracker
        self._buffers: List[object] = []
        self._closed = False

    def track(self, buf: T) -> T:
        if self._closed:
            raise RuntimeError("buffer scope already released")
        self._buffers.append(buf)
        self._tracker._on_allocate()
        return buf

    def release(self) -> None:
        if self._closed:
            return
        self._closed = True
        count = len(self._buffers)
        self._buffers.clear()
        self._tracker._on_release(count)


class BufferTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.allocated = 0
        self.released = 0

    @property
    def live(self) -> int:
        with self._lock:
            return self.allocated - self.released

    def _on_allocate(self) -> None:
        with self._lock:
            self.allocated += 1

    def _on_release(self, count: int) -> None:
        with self._lock:
            self.released += count

    @contextmanager
    def scope(self) -> Iterator[BufferScope]:
        scope = BufferScope(self)
        try:
            yield scope
        finally:
            scope.release()
