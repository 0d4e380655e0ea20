from __future__ import annotations

from .constants import DELIMITER


class FrameAssembler:
    """
    Reassembles pipe-terminated commands from arbitrary stream chunks.

    Whatever follows the last delimiter is held back and prefixed to the
    next chunk, so a command is never truncated or merged across reads.
    """

    def __init__(self, delimiter: str = DELIMITER) -> None:
        self.delimiter = delimiter
        self._partial = ""

    @property
    def partial(self) -> str:
        return self._partial

    def feed(self, chunk: str) -> list[str]:
        pieces = (self._partial + chunk).split(self.delimiter)
        self._partial = pieces.pop()
        return pieces

    def reset(self) -> None:
        self._partial = ""
