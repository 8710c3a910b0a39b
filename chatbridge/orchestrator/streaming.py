"""Word-granularity smoothing of streamed text."""

import re

_WORD = re.compile(r"\S+\s+")


class WordChunker:
    """Buffer text deltas and release them one whole word at a time.

    A word is released once the whitespace that follows it has arrived;
    ``flush()`` returns whatever is still buffered at the end of a step.

    Example:
        chunker = WordChunker()
        chunker.feed("Hel")        # []
        chunker.feed("lo wor")     # ["Hello "]
        chunker.flush()            # "wor"
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        chunks = []
        while True:
            match = _WORD.match(self._buffer)
            if match is None:
                leading = len(self._buffer) - len(self._buffer.lstrip())
                if leading and self._buffer.strip():
                    # Leading whitespace before the next word
                    chunks.append(self._buffer[:leading])
                    self._buffer = self._buffer[leading:]
                    continue
                break
            chunks.append(match.group(0))
            self._buffer = self._buffer[match.end():]
        return chunks

    def flush(self) -> str:
        rest, self._buffer = self._buffer, ""
        return rest
