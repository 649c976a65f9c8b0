"""Navigation contract between the engines and the surrounding application."""

from __future__ import annotations

from typing import List


class Navigator:
    def go(self, path: str) -> None:
        raise NotImplementedError

    def back(self) -> None:
        raise NotImplementedError


class MemoryNavigator(Navigator):
    """Records navigation requests; the host application decides what they mean."""

    def __init__(self, start: str = "/") -> None:
        self.history: List[str] = [start]

    @property
    def current(self) -> str:
        return self.history[-1]

    def go(self, path: str) -> None:
        self.history.append(path)

    def back(self) -> None:
        if len(self.history) > 1:
            self.history.pop()
